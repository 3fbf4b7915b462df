import subprocess
import re
import logging
import shutil
import threading
import time
from collections import deque
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from abrpub.config.models import EncoderConfig
from abrpub.domain.errors import EncodeError
from abrpub.domain.events import EncodeStrategyFailed, RenditionEncoded
from abrpub.domain.models import (
    DEFAULT_STRATEGIES,
    Ladder,
    QualityLevel,
    RenditionOutput,
    RENDITION_PLAYLIST,
    SEGMENT_PATTERN,
    SourceInfo,
    segment_counts_agree,
)
from abrpub.infrastructure.event_bus import EventBus
from abrpub.infrastructure.hwaccel import SOFTWARE_ENCODER
from abrpub.infrastructure.playlist import expected_segment_count, verify_rendition_dir

# Device-side decode, scaling and frame format per hardware encoder
HWACCEL_INPUT = {
    "h264_nvenc": ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"],
    "h264_qsv": ["-hwaccel", "qsv", "-hwaccel_output_format", "qsv"],
    "h264_vaapi": ["-hwaccel", "vaapi", "-hwaccel_output_format", "vaapi"],
}
HW_SCALE_FILTER = {
    "h264_nvenc": "scale_cuda",
    "h264_qsv": "scale_qsv",
    "h264_vaapi": "scale_vaapi",
}
NVENC_PRESETS = {"slow": "p5", "medium": "p3", "veryfast": "p1"}

TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+\.\d+)")


class SegmentEncoder:
    """Encodes one quality level into HLS segments, falling through encode strategies."""

    def __init__(
        self,
        event_bus: EventBus,
        config: EncoderConfig,
        encoder: str = SOFTWARE_ENCODER,
        strategies: Sequence = DEFAULT_STRATEGIES,
        ffmpeg_bin: str = "ffmpeg",
    ):
        self.event_bus = event_bus
        self.config = config
        self.encoder = encoder
        self.strategies = tuple(strategies)
        self.ffmpeg_bin = ffmpeg_bin
        self.logger = logging.getLogger(__name__)

    def encoder_for(self, strategy) -> str:
        return SOFTWARE_ENCODER if strategy.software_only else self.encoder

    def _video_filter(self, level: QualityLevel, encoder: str, device_frames: bool) -> Optional[str]:
        filters = []
        scaled = not level.is_original
        if device_frames:
            if scaled:
                if encoder == "h264_vaapi":
                    filters.append(f"scale_vaapi=w={level.width}:h={level.height}:format=nv12")
                else:
                    filters.append(f"{HW_SCALE_FILTER[encoder]}={level.width}:{level.height}")
        else:
            if scaled:
                filters.append(f"scale={level.width}:{level.height}")
            if encoder == "h264_vaapi":
                filters.append("format=nv12,hwupload")
            elif encoder == "h264_qsv":
                filters.append("format=nv12")
        return ",".join(filters) if filters else None

    def _encoder_args(self, strategy, encoder: str) -> List[str]:
        if encoder == "h264_nvenc":
            args = ["-c:v", encoder, "-preset", NVENC_PRESETS.get(strategy.preset, "p3"),
                    "-rc", "vbr", "-cq", str(strategy.quality)]
        elif encoder == "h264_qsv":
            args = ["-c:v", encoder, "-preset", strategy.preset, "-global_quality", str(strategy.quality)]
            if strategy.kind == "optimal":
                args.extend(["-look_ahead", "1"])
        elif encoder == "h264_vaapi":
            args = ["-c:v", encoder]
        else:
            args = ["-c:v", SOFTWARE_ENCODER, "-preset", strategy.preset, "-crf", str(strategy.quality)]

        profile = strategy.profile
        if encoder == "h264_vaapi" and profile == "baseline":
            profile = "constrained_baseline"
        args.extend(["-profile:v", profile, "-level", strategy.h264_level, "-bf", str(strategy.b_frames)])
        args.extend(strategy.extra_args)
        return args

    def build_command(
        self,
        source_file: Path,
        level: QualityLevel,
        strategy,
        segment_duration: int,
        output_dir: Path,
    ) -> List[str]:
        """Constructs the complete ffmpeg invocation for one strategy."""
        encoder = self.encoder_for(strategy)
        hardware = encoder != SOFTWARE_ENCODER
        device_frames = hardware and strategy.hardware_decode

        cmd = [self.ffmpeg_bin, "-y", "-hide_banner", "-nostdin"]
        if encoder == "h264_vaapi":
            cmd.extend(["-vaapi_device", self.config.vaapi_device])
        if device_frames:
            cmd.extend(HWACCEL_INPUT[encoder])
        cmd.extend(["-i", str(source_file)])

        cmd.extend(["-map", "0:v:0"])
        if level.encode_audio:
            cmd.extend(["-map", "0:a:0?"])

        vf = self._video_filter(level, encoder, device_frames)
        if vf:
            cmd.extend(["-vf", vf])
        if not hardware:
            cmd.extend(["-pix_fmt", "yuv420p"])

        cmd.extend(self._encoder_args(strategy, encoder))
        cmd.extend([
            "-b:v", f"{level.video_bitrate}k",
            "-maxrate", f"{level.max_bitrate}k",
            "-bufsize", f"{level.buffer_size}k",
        ])

        # Keyframes on every segment boundary keep segment counts equal across renditions
        cmd.extend([
            "-g", str(strategy.gop_size),
            "-keyint_min", str(strategy.gop_size),
            "-sc_threshold", "0",
            "-force_key_frames", f"expr:gte(t,n_forced*{segment_duration})",
        ])

        if level.encode_audio:
            cmd.extend(["-c:a", "aac", "-b:a", f"{level.audio_bitrate}k", "-ac", "2"])
        else:
            cmd.append("-an")

        cmd.extend([
            "-f", "hls",
            "-hls_time", str(segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            str(output_dir / RENDITION_PLAYLIST),
        ])
        return cmd

    def _run_ffmpeg(self, cmd: List[str], duration: float = 0.0) -> Tuple[int, List[str], bool]:
        """Runs ffmpeg, returning (returncode, last output lines, timed_out)."""
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            universal_newlines=True,
            bufsize=1
        )
        timed_out = threading.Event()

        def _kill():
            timed_out.set()
            process.kill()

        timer = threading.Timer(self.config.timeout_seconds, _kill)
        timer.daemon = True
        timer.start()

        tail = deque(maxlen=20)
        last_logged = -10
        try:
            for line in process.stdout:
                line = line.rstrip()
                if not line:
                    continue
                tail.append(line)
                match = TIME_RE.search(line)
                if match and duration > 0:
                    h, m, s = map(float, match.groups())
                    percent = int(min(100.0, (h * 3600 + m * 60 + s) / duration * 100))
                    if percent >= last_logged + 10:
                        last_logged = percent
                        self.logger.debug(f"ffmpeg progress {percent}%")
            process.wait()
        finally:
            timer.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()
        return process.returncode, list(tail), timed_out.is_set()

    def _reset_dir(self, output_dir: Path):
        if output_dir.exists():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True)

    def _expected_segments(self, source_info: Optional[SourceInfo], segment_duration: int) -> Optional[int]:
        if source_info is None or source_info.duration <= 0:
            return None
        return expected_segment_count(source_info.duration, segment_duration)

    def reusable_output(
        self,
        level: QualityLevel,
        output_root: Path,
        segment_duration: int,
        source_info: Optional[SourceInfo] = None,
    ) -> Optional[RenditionOutput]:
        """Returns the rendition left by an earlier run if it is finished and intact."""
        out_dir = output_root / level.name
        if not out_dir.is_dir():
            return None
        check = verify_rendition_dir(
            out_dir,
            min_segments=self.config.min_accepted_segments,
            expected_segments=self._expected_segments(source_info, segment_duration),
            tolerance=self.config.segment_tolerance,
            require_endlist=True,
        )
        if not check.valid:
            self.logger.info(f"Existing {level.name} output not reusable: {check.reason}")
            return None
        return RenditionOutput(
            level=level,
            directory=out_dir,
            playlist_path=out_dir / RENDITION_PLAYLIST,
            segments=check.segments,
            strategy="reused",
        )

    def encode(
        self,
        source_file: Path,
        level: QualityLevel,
        segment_duration: int,
        output_root: Path,
        source_info: Optional[SourceInfo] = None,
        asset_id: str = "",
    ) -> RenditionOutput:
        """Encodes one rendition. Raises EncodeError once every strategy has failed."""
        out_dir = output_root / level.name
        duration = source_info.duration if source_info else 0.0
        expected = None if self.config.accept_partial_output else self._expected_segments(source_info, segment_duration)
        attempts: List[str] = []

        for strategy in self.strategies:
            encoder = self.encoder_for(strategy)
            self._reset_dir(out_dir)
            cmd = self.build_command(source_file, level, strategy, segment_duration, out_dir)
            self.logger.info(f"ENCODE_START: {level.name} strategy={strategy.kind} encoder={encoder}")
            self.logger.debug(f"ffmpeg command: {' '.join(cmd)}")
            start_time = time.monotonic()

            returncode = None
            try:
                returncode, tail, timed_out = self._run_ffmpeg(cmd, duration)
            except OSError as e:
                reason = f"could not start ffmpeg: {e}"
            else:
                last_line = tail[-1] if tail else "no output"
                if timed_out:
                    reason = f"timed out after {self.config.timeout_seconds}s"
                elif returncode == 0:
                    check = verify_rendition_dir(out_dir, min_segments=self.config.min_accepted_segments)
                    if check.valid:
                        return self._accept(asset_id, level, out_dir, check.segments, strategy.kind, start_time)
                    reason = f"exit code 0 but output invalid: {check.reason}"
                else:
                    # ffmpeg exit codes are advisory; finished output on disk wins
                    check = verify_rendition_dir(
                        out_dir,
                        min_segments=self.config.min_accepted_segments,
                        expected_segments=expected,
                        tolerance=self.config.segment_tolerance,
                    )
                    if check.valid:
                        self.logger.warning(
                            f"{level.name}: ffmpeg exited with {returncode} but output verified "
                            f"({check.segment_count} segments), accepting"
                        )
                        return self._accept(asset_id, level, out_dir, check.segments, strategy.kind, start_time)
                    reason = f"exit code {returncode} ({last_line}); output rejected: {check.reason}"

            self.logger.warning(f"ENCODE_FAIL: {level.name} strategy={strategy.kind} {reason}")
            attempts.append(f"{strategy.kind}: {reason}")
            self.event_bus.publish(EncodeStrategyFailed(
                rendition=level.name,
                strategy=strategy.kind,
                returncode=returncode,
                reason=reason,
            ))

        raise EncodeError(level.name, attempts)

    def _accept(self, asset_id: str, level: QualityLevel, out_dir: Path, segments: List[Path],
                strategy: str, start_time: float) -> RenditionOutput:
        elapsed = time.monotonic() - start_time
        output = RenditionOutput(
            level=level,
            directory=out_dir,
            playlist_path=out_dir / RENDITION_PLAYLIST,
            segments=segments,
            strategy=strategy,
        )
        self.logger.info(
            f"ENCODE_END: {level.name} strategy={strategy} segments={output.segment_count} elapsed={elapsed:.1f}s"
        )
        self.event_bus.publish(RenditionEncoded(asset_id=asset_id, output=output))
        return output

    def encode_ladder(
        self,
        source_file: Path,
        ladder: Ladder,
        segment_duration: int,
        output_root: Path,
        source_info: Optional[SourceInfo] = None,
        asset_id: str = "",
        reuse_existing: bool = True,
    ) -> List[RenditionOutput]:
        """Encodes every level in ladder order, reusing finished renditions from a prior run."""
        outputs = []
        for level in ladder:
            output = None
            if reuse_existing:
                output = self.reusable_output(level, output_root, segment_duration, source_info)
                if output:
                    self.logger.info(f"Reusing {level.name} from previous run ({output.segment_count} segments)")
                    self.event_bus.publish(RenditionEncoded(asset_id=asset_id, output=output))
            if output is None:
                output = self.encode(source_file, level, segment_duration, output_root, source_info, asset_id)
            outputs.append(output)

        if not segment_counts_agree(outputs, tolerance=self.config.segment_tolerance):
            counts = ", ".join(f"{o.name}={o.segment_count}" for o in outputs)
            raise EncodeError("ladder", [f"segment counts diverge: {counts}"])
        return outputs
