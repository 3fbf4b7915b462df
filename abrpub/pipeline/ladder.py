import logging
import math
from typing import List
from abrpub.config.models import LadderConfig
from abrpub.domain.errors import SourceAnalysisFailure
from abrpub.domain.models import Ladder, QualityLevel, SourceInfo

# Height threshold -> pass-through level name, checked top down
ORIGINAL_NAMES = (
    (2160, "original-4k"),
    (1440, "original-1440p"),
    (1080, "original-1080p"),
    (720, "original-720p"),
    (480, "original-480p"),
)


def _scaled(kbps: int, fraction: float) -> int:
    # round first so 5000 * 1.1 floors to 5500, not 5499
    return math.floor(round(kbps * fraction, 6))


def original_level_name(height: int) -> str:
    for threshold, name in ORIGINAL_NAMES:
        if height >= threshold:
            return name
    return "original"


class LadderPlanner:
    """Plans the quality ladder for one source."""

    def __init__(self, config: LadderConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _original_level(self, source: SourceInfo) -> QualityLevel:
        cfg = self.config
        effective_bps = max(source.bitrate, cfg.bitrate_floor)
        effective_kbps = effective_bps // 1000
        return QualityLevel(
            name=original_level_name(source.height),
            width=source.width,
            height=source.height,
            video_bitrate=_scaled(effective_kbps, cfg.target_fraction),
            max_bitrate=_scaled(effective_kbps, cfg.max_fraction),
            buffer_size=_scaled(effective_kbps, cfg.buffer_fraction),
            audio_bitrate=cfg.original_audio_bitrate,
            is_original=True,
            encode_audio=source.has_audio,
        )

    def _lower_level(self, source: SourceInfo) -> QualityLevel:
        cfg = self.config
        return QualityLevel(
            name=cfg.lower_name,
            width=cfg.lower_width,
            height=cfg.lower_height,
            video_bitrate=cfg.lower_video_bitrate,
            max_bitrate=cfg.lower_max_bitrate,
            buffer_size=cfg.lower_buffer_size,
            audio_bitrate=cfg.lower_audio_bitrate,
            encode_audio=source.has_audio,
        )

    def plan(self, source: SourceInfo, include_lower_rendition: bool = False) -> Ladder:
        """Returns the ladder, lower rendition first and the pass-through level last."""
        if source.width <= 0 or source.height <= 0:
            raise SourceAnalysisFailure("source", f"invalid dimensions {source.width}x{source.height}")
        if source.duration <= 0:
            raise SourceAnalysisFailure("source", "duration is unknown")

        if source.bitrate < self.config.bitrate_floor:
            self.logger.debug(
                f"Source bitrate {source.bitrate} below floor, using {self.config.bitrate_floor}"
            )

        levels: List[QualityLevel] = []
        if include_lower_rendition:
            if source.height > self.config.lower_height:
                levels.append(self._lower_level(source))
            else:
                self.logger.info(
                    f"Skipping {self.config.lower_name}: source is only {source.height}p"
                )
        levels.append(self._original_level(source))

        ladder = Ladder(levels=tuple(levels), source_height=source.height)
        self.logger.info(
            "Ladder: " + ", ".join(f"{lvl.name} {lvl.resolution} {lvl.video_bitrate}k" for lvl in ladder)
        )
        return ladder
