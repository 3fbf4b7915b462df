import threading
import pytest
from pathlib import Path
from typing import Dict, Optional
from abrpub.config.models import AppConfig, DownloadConfig, GeneralConfig, PublisherConfig
from abrpub.domain.models import QualityLevel, RenditionOutput, SourceInfo


class InMemoryStore:
    """Object store double with the S3ObjectStore method set."""

    def __init__(self):
        self.objects: Dict[str, dict] = {}
        self.put_calls = []
        self.deleted = []
        self.failures: Dict[str, int] = {}  # key -> failures left, -1 = always
        self.hidden_from_listing = set()
        self._lock = threading.Lock()

    def fail(self, key: str, times: int = -1):
        self.failures[key] = times

    def list_keys(self, prefix: str):
        with self._lock:
            return {k for k in self.objects if k.startswith(prefix) and k not in self.hidden_from_listing}

    def head(self, key: str) -> Optional[int]:
        with self._lock:
            obj = self.objects.get(key)
            return len(obj["body"]) if obj else None

    def put_file(self, path: Path, key: str, content_type: str, cache_control: Optional[str] = None) -> int:
        with self._lock:
            self.put_calls.append(key)
            left = self.failures.get(key, 0)
            if left:
                if left > 0:
                    self.failures[key] = left - 1
                raise OSError(f"simulated failure for {key}")
        body = Path(path).read_bytes()
        with self._lock:
            self.objects[key] = {"body": body, "content_type": content_type, "cache_control": cache_control}
        return len(body)

    def download_to(self, key: str, destination: Path, chunk_size: int = 0) -> int:
        body = self.objects[key]["body"]
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
        return len(body)

    def delete(self, key: str):
        with self._lock:
            self.objects.pop(key, None)
            self.deleted.append(key)

    def close(self):
        pass


def write_rendition(directory: Path, segments: int, ended: bool = True, duration: float = 6.0) -> Path:
    """Writes an ffmpeg-style VOD media playlist plus its segment files."""
    directory.mkdir(parents=True, exist_ok=True)
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:6", "#EXT-X-MEDIA-SEQUENCE:0",
             "#EXT-X-PLAYLIST-TYPE:VOD"]
    for i in range(segments):
        name = f"segment_{i:03d}.ts"
        (directory / name).write_bytes(b"\x47" * 188)
        lines.append(f"#EXTINF:{duration:.6f},")
        lines.append(name)
    if ended:
        lines.append("#EXT-X-ENDLIST")
    playlist = directory / "playlist.m3u8"
    playlist.write_text("\n".join(lines) + "\n")
    return playlist


def make_output(root: Path, name: str, segments: int, height: int = 1080) -> RenditionOutput:
    directory = root / name
    playlist = write_rendition(directory, segments)
    level = QualityLevel(
        name=name, width=height * 16 // 9, height=height,
        video_bitrate=4750, max_bitrate=5500, buffer_size=7500,
        is_original=name.startswith("original"),
    )
    return RenditionOutput(
        level=level,
        directory=directory,
        playlist_path=playlist,
        segments=[directory / f"segment_{i:03d}.ts" for i in range(segments)],
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def fast_publisher_config():
    return PublisherConfig(batch_delay_seconds=0.0, backoff_initial_seconds=0.0, backoff_max_seconds=0.0)


@pytest.fixture
def source_1080p():
    return SourceInfo(width=1920, height=1080, bitrate=5_000_000, duration=7200.0,
                      codec="h264", frame_rate=30.0, has_audio=True, audio_codec="aac")


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        general=GeneralConfig(workspace_dir=tmp_path / "work", log_dir=tmp_path / "logs", segment_duration=6),
        publisher=PublisherConfig(batch_delay_seconds=0.0, backoff_initial_seconds=0.0, backoff_max_seconds=0.0),
        download=DownloadConfig(backoff_initial_seconds=0.0, backoff_max_seconds=0.0),
    )


@pytest.fixture
def rendition_factory():
    return make_output


@pytest.fixture
def rendition_writer():
    return write_rendition
