import subprocess
import json
from pathlib import Path
from typing import Any, Dict, Optional
from abrpub.domain.errors import SourceAnalysisFailure
from abrpub.domain.models import SourceInfo

class FFprobeAdapter:
    """Wrapper around ffprobe to extract stream information."""

    def __init__(self, timeout: int = 60):
        self.timeout = timeout

    @staticmethod
    def parse_frame_rate(value: Optional[str]) -> float:
        """Parses '30000/1001' style rates; 0.0 when unknown."""
        if not value or value == "0/0":
            return 0.0
        try:
            if "/" in value:
                num, den = map(float, value.split("/"))
                return num / den if den else 0.0
            return float(value)
        except ValueError:
            return 0.0

    def _run(self, file_path: Path) -> Dict[str, Any]:
        cmd = [
            "ffprobe",
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            "-show_error",
            str(file_path)
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SourceAnalysisFailure(str(file_path), f"ffprobe could not run: {e}") from e
        if result.returncode != 0:
            raise SourceAnalysisFailure(str(file_path), f"ffprobe exited with {result.returncode}: {result.stderr.strip()}")
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise SourceAnalysisFailure(str(file_path), f"unparseable ffprobe output: {e}") from e
        if "error" in data:
            raise SourceAnalysisFailure(str(file_path), data["error"].get("string", "unknown error"))
        return data

    def get_source_info(self, file_path: Path) -> SourceInfo:
        """Executes ffprobe and builds the SourceInfo the ladder is planned from."""
        data = self._run(file_path)
        streams = data.get("streams", [])
        fmt = data.get("format", {})

        video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise SourceAnalysisFailure(str(file_path), "no video stream found")
        audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

        width = int(video_stream.get("width") or 0)
        height = int(video_stream.get("height") or 0)
        if width <= 0 or height <= 0:
            raise SourceAnalysisFailure(str(file_path), f"invalid dimensions {width}x{height}")

        try:
            duration = float(fmt.get("duration") or video_stream.get("duration") or 0.0)
        except ValueError:
            duration = 0.0
        if duration <= 0:
            raise SourceAnalysisFailure(str(file_path), "duration is unknown")

        # Container bitrate first; some muxers only report it on the stream
        bitrate_raw = fmt.get("bit_rate") or video_stream.get("bit_rate") or 0
        try:
            bitrate = int(bitrate_raw)
        except ValueError:
            bitrate = 0

        return SourceInfo(
            width=width,
            height=height,
            bitrate=bitrate,
            duration=duration,
            codec=video_stream.get("codec_name", "unknown"),
            frame_rate=self.parse_frame_rate(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")),
            has_audio=audio_stream is not None,
            audio_codec=audio_stream.get("codec_name") if audio_stream else None,
            pixel_format=video_stream.get("pix_fmt"),
        )
