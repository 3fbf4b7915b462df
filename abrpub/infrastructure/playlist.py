"""
HLS manifest writing and checking.

The master playlist is composed from the ladder alone. Rendition playlists are
written by ffmpeg; here they are only parsed and verified against the segment
files actually present on disk.
"""
import logging
import math
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field
from abrpub.domain.models import Ladder, MASTER_PLAYLIST, RENDITION_PLAYLIST, segment_index

logger = logging.getLogger(__name__)


class PlaylistCheck(BaseModel):
    valid: bool
    segments: List[Path] = Field(default_factory=list)
    reason: Optional[str] = None
    ended: bool = False

    @property
    def segment_count(self) -> int:
        return len(self.segments)


class ParsedPlaylist(BaseModel):
    segments: List[str] = Field(default_factory=list)
    durations: List[float] = Field(default_factory=list)
    target_duration: Optional[int] = None
    ended: bool = False

    @property
    def total_duration(self) -> float:
        return sum(self.durations)


def render_master(ladder: Ladder) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", ""]
    for level in ladder:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={level.bandwidth},RESOLUTION={level.resolution}")
        lines.append(f"{level.name}/{RENDITION_PLAYLIST}")
        lines.append("")
    return "\n".join(lines) + "\n"


def compose_master(ladder: Ladder, output_dir: Path) -> Path:
    """Writes the master playlist into output_dir and returns its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    master_path = output_dir / MASTER_PLAYLIST
    master_path.write_text(render_master(ladder))
    logger.info(f"Master playlist written with {len(ladder)} renditions: {master_path}")
    return master_path


def parse_rendition_playlist(path: Path) -> ParsedPlaylist:
    """Parses a media playlist. Raises ValueError when it is not an M3U8 file."""
    text = path.read_text()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise ValueError(f"{path} does not start with #EXTM3U")

    parsed = ParsedPlaylist()
    for line in lines[1:]:
        if line.startswith("#EXTINF:"):
            value = line[len("#EXTINF:"):].split(",", 1)[0]
            try:
                parsed.durations.append(float(value))
            except ValueError:
                raise ValueError(f"{path}: bad EXTINF duration {value!r}")
        elif line.startswith("#EXT-X-TARGETDURATION:"):
            parsed.target_duration = int(line.split(":", 1)[1])
        elif line == "#EXT-X-ENDLIST":
            parsed.ended = True
        elif not line.startswith("#"):
            parsed.segments.append(line)
    return parsed


def expected_segment_count(duration: float, segment_duration: int) -> int:
    return max(1, math.ceil(duration / segment_duration))


def verify_rendition_dir(
    directory: Path,
    min_segments: int = 1,
    expected_segments: Optional[int] = None,
    tolerance: int = 1,
    require_endlist: bool = False,
) -> PlaylistCheck:
    """
    Checks an encoded rendition directory.

    Valid means: the playlist parses, the segments it references are numbered
    contiguously from 0 and all exist non-empty on disk, and there are at
    least min_segments of them. Segment files the playlist does not reference
    (a segment cut short by a crash) are ignored. When expected_segments is
    given the count must be within tolerance of it.
    """
    playlist_path = directory / RENDITION_PLAYLIST
    if not playlist_path.exists():
        return PlaylistCheck(valid=False, reason="playlist missing")

    try:
        parsed = parse_rendition_playlist(playlist_path)
    except (OSError, ValueError) as e:
        return PlaylistCheck(valid=False, reason=str(e))

    segments = [directory / name for name in parsed.segments]

    for expected_idx, name in enumerate(parsed.segments):
        if segment_index(name) != expected_idx:
            return PlaylistCheck(valid=False, ended=parsed.ended,
                                 reason=f"segment numbering gap at {expected_idx} (found {name})")

    missing = [p.name for p in segments if not p.is_file() or p.stat().st_size == 0]
    if missing:
        return PlaylistCheck(valid=False, ended=parsed.ended,
                             reason=f"playlist references missing segments: {missing[:3]}")

    if len(segments) < min_segments:
        return PlaylistCheck(valid=False, segments=segments, ended=parsed.ended,
                             reason=f"{len(segments)} segments, need at least {min_segments}")

    if require_endlist and not parsed.ended:
        return PlaylistCheck(valid=False, segments=segments, ended=False, reason="playlist has no #EXT-X-ENDLIST")

    if expected_segments is not None and abs(len(segments) - expected_segments) > tolerance:
        return PlaylistCheck(valid=False, segments=segments, ended=parsed.ended,
                             reason=f"{len(segments)} segments, expected about {expected_segments}")

    return PlaylistCheck(valid=True, segments=segments, ended=parsed.ended)


class MasterEntry(BaseModel):
    name: str
    bandwidth: int
    width: int
    height: int


def parse_master_playlist(path: Path) -> List[MasterEntry]:
    """Reads back the renditions a master playlist written by compose_master declares."""
    lines = [line.strip() for line in path.read_text().splitlines() if line.strip()]
    if not lines or lines[0] != "#EXTM3U":
        raise ValueError(f"{path} does not start with #EXTM3U")

    entries = []
    pending = None
    for line in lines[1:]:
        if line.startswith("#EXT-X-STREAM-INF:"):
            attrs = dict(
                item.split("=", 1) for item in line[len("#EXT-X-STREAM-INF:"):].split(",") if "=" in item
            )
            width, _, height = attrs.get("RESOLUTION", "0x0").partition("x")
            pending = (int(attrs.get("BANDWIDTH", 0)), int(width or 0), int(height or 0))
        elif not line.startswith("#") and pending is not None:
            name = line.split("/", 1)[0]
            entries.append(MasterEntry(name=name, bandwidth=pending[0], width=pending[1], height=pending[2]))
            pending = None
    return entries
