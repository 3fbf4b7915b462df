import re
import time
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, List, Optional, Tuple, Union, Literal, FrozenSet, Iterable
from pydantic import BaseModel, ConfigDict, Field, model_validator

from abrpub.domain.errors import InvalidStateTransition

MASTER_PLAYLIST = "playlist.m3u8"
RENDITION_PLAYLIST = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
SEGMENT_RE = re.compile(r"^segment_(\d+)\.ts$")


class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    ENCODING = "encoding"
    PUBLISHING = "publishing"
    COMPLETE = "complete"
    FAILED = "failed"


# A resumed invocation starts from PENDING and may jump straight to the stage
# its workspace allows.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.DOWNLOADING, JobStatus.ENCODING, JobStatus.PUBLISHING, JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.ENCODING, JobStatus.FAILED}),
    JobStatus.ENCODING: frozenset({JobStatus.PUBLISHING, JobStatus.FAILED}),
    JobStatus.PUBLISHING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class SourceInfo(BaseModel):
    width: int
    height: int
    bitrate: int  # bits per second, 0 when unknown
    duration: float
    codec: str = "unknown"
    frame_rate: float = 0.0
    has_audio: bool = True
    audio_codec: Optional[str] = None
    pixel_format: Optional[str] = None


class CapabilityReport(BaseModel):
    """Immutable snapshot of what the host can encode with."""
    model_config = ConfigDict(frozen=True)

    vendors: FrozenSet[str] = frozenset()
    supported_encoders: FrozenSet[str] = frozenset()
    validated_encoders: FrozenSet[str] = frozenset()
    recommended_encoder: str = "libx264"
    details: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)

    @property
    def is_hardware(self) -> bool:
        return self.recommended_encoder != "libx264"


class QualityLevel(BaseModel):
    """One rendition of the ladder. Bitrates are in kbps."""
    model_config = ConfigDict(frozen=True)

    name: str
    width: int
    height: int
    video_bitrate: int = Field(gt=0)
    max_bitrate: int = Field(gt=0)
    buffer_size: int = Field(gt=0)
    audio_bitrate: int = Field(default=128, ge=0)
    is_original: bool = False
    encode_audio: bool = True

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Peak declared bandwidth in bits per second (video + audio)."""
        audio = self.audio_bitrate if self.encode_audio else 0
        return (self.video_bitrate + audio) * 1000


class Ladder(BaseModel):
    model_config = ConfigDict(frozen=True)

    levels: Tuple[QualityLevel, ...]
    source_height: int

    @model_validator(mode="after")
    def check_invariants(self) -> "Ladder":
        if not self.levels:
            raise ValueError("Ladder must contain at least one level")
        names = [level.name for level in self.levels]
        if len(set(names)) != len(names):
            raise ValueError(f"Ladder level names must be unique: {names}")
        originals = [level for level in self.levels if level.is_original]
        if len(originals) != 1:
            raise ValueError(f"Ladder must contain exactly one original level, found {len(originals)}")
        for level in self.levels:
            if not level.is_original and level.height >= self.source_height:
                raise ValueError(f"Level {level.name} ({level.height}p) would upscale a {self.source_height}p source")
        return self

    def __iter__(self):
        return iter(self.levels)

    def __len__(self) -> int:
        return len(self.levels)

    @property
    def names(self) -> List[str]:
        return [level.name for level in self.levels]

    @property
    def original(self) -> QualityLevel:
        return next(level for level in self.levels if level.is_original)


class RenditionOutput(BaseModel):
    """Encoded rendition on disk: a playlist plus gap-free numbered segments."""
    level: QualityLevel
    directory: Path
    playlist_path: Path
    segments: List[Path] = Field(default_factory=list)
    strategy: Optional[str] = None

    @property
    def name(self) -> str:
        return self.level.name

    @property
    def segment_names(self) -> List[str]:
        return [p.name for p in self.segments]

    @property
    def segment_count(self) -> int:
        return len(self.segments)


def segment_index(filename: str) -> Optional[int]:
    match = SEGMENT_RE.match(filename)
    return int(match.group(1)) if match else None


def segment_counts_agree(outputs: Iterable[RenditionOutput], tolerance: int = 1) -> bool:
    counts = [o.segment_count for o in outputs]
    if not counts:
        return True
    return max(counts) - min(counts) <= tolerance


class AssetPathPolicy(BaseModel):
    """Maps an asset id to its canonical location in the object store."""
    model_config = ConfigDict(frozen=True)

    root: str = "hls"
    legacy_prefixes: Tuple[str, ...] = ("api/movie/",)

    def prefix_for(self, asset_id: str) -> str:
        return f"{self.root.strip('/')}/{asset_id}/"

    def master_key(self, asset_id: str) -> str:
        return self.prefix_for(asset_id) + MASTER_PLAYLIST

    def rendition_prefix(self, asset_id: str, rendition: str) -> str:
        return f"{self.prefix_for(asset_id)}{rendition}/"

    def key_for(self, asset_id: str, rendition: str, filename: str) -> str:
        return self.rendition_prefix(asset_id, rendition) + filename

    def relative(self, asset_id: str, key: str) -> str:
        prefix = self.prefix_for(asset_id)
        if not key.startswith(prefix):
            raise ValueError(f"Key {key} is outside {prefix}")
        return key[len(prefix):]

    def normalize_source_key(self, stored_path: str) -> str:
        """Turns a catalog source path into an object key."""
        key = stored_path.lstrip("/")
        for legacy in self.legacy_prefixes:
            if key.startswith(legacy):
                return key[len(legacy):]
        return key


class PublishManifest(BaseModel):
    """Every remote key a finished conversion must have. Derived, never stored."""
    asset_id: str
    prefix: str
    master_key: str
    playlist_keys: Dict[str, str]
    segment_keys: Dict[str, List[str]]

    @classmethod
    def from_outputs(cls, asset_id: str, outputs: List[RenditionOutput], policy: AssetPathPolicy) -> "PublishManifest":
        return cls(
            asset_id=asset_id,
            prefix=policy.prefix_for(asset_id),
            master_key=policy.master_key(asset_id),
            playlist_keys={o.name: policy.key_for(asset_id, o.name, RENDITION_PLAYLIST) for o in outputs},
            segment_keys={o.name: [policy.key_for(asset_id, o.name, s) for s in o.segment_names] for o in outputs},
        )

    def all_keys(self) -> List[str]:
        keys = [self.master_key]
        for name, playlist_key in self.playlist_keys.items():
            keys.append(playlist_key)
            keys.extend(self.segment_keys.get(name, []))
        return keys

    def missing_from(self, remote_keys: Iterable[str]) -> List[str]:
        present = set(remote_keys)
        return [k for k in self.all_keys() if k not in present]


class _StrategyBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    preset: str
    profile: str
    h264_level: str
    gop_size: int = Field(gt=0)
    quality: int = Field(ge=0, le=51)
    b_frames: int = Field(default=3, ge=0)
    hardware_decode: bool = False
    software_only: bool = False
    extra_args: Tuple[str, ...] = ()


class OptimalStrategy(_StrategyBase):
    """Full feature set: hardware decode/scale when available, high profile."""
    kind: Literal["optimal"] = "optimal"
    preset: str = "slow"
    profile: str = "high"
    h264_level: str = "4.1"
    gop_size: int = 48
    quality: int = 20
    hardware_decode: bool = True
    extra_args: Tuple[str, ...] = ("-refs", "3")


class CompatibleStrategy(_StrategyBase):
    """Same encoder, software decode, main profile and a shorter GOP."""
    kind: Literal["compatible"] = "compatible"
    preset: str = "medium"
    profile: str = "main"
    h264_level: str = "4.0"
    gop_size: int = 24
    quality: int = 23
    b_frames: int = 2


class FallbackStrategy(_StrategyBase):
    """Software libx264, fastest preset, baseline profile, lowered quality."""
    kind: Literal["fallback"] = "fallback"
    preset: str = "veryfast"
    profile: str = "baseline"
    h264_level: str = "3.1"
    gop_size: int = 24
    quality: int = 28
    b_frames: int = 0
    software_only: bool = True


EncodeStrategy = Annotated[
    Union[OptimalStrategy, CompatibleStrategy, FallbackStrategy],
    Field(discriminator="kind"),
]

DEFAULT_STRATEGIES: Tuple[Union[OptimalStrategy, CompatibleStrategy, FallbackStrategy], ...] = (
    OptimalStrategy(),
    CompatibleStrategy(),
    FallbackStrategy(),
)


class ConversionJob(BaseModel):
    asset_id: str
    status: JobStatus = JobStatus.PENDING
    title: Optional[str] = None
    source_key: Optional[str] = None
    source_path: Optional[Path] = None
    workspace: Optional[Path] = None
    output_path: Optional[str] = None
    error_message: Optional[str] = None
    failed_stage: Optional[JobStatus] = None
    started_at: float = Field(default_factory=time.time)
    processing_time_ms: Optional[int] = None
    uploaded_objects: int = 0
    skipped: bool = False

    def transition(self, target: JobStatus):
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(self.asset_id, self.status.value, target.value)
        self.status = target

    def fail(self, message: str):
        self.failed_stage = self.status
        self.error_message = message
        if self.status not in (JobStatus.COMPLETE, JobStatus.FAILED):
            self.status = JobStatus.FAILED

    def finish_clock(self):
        self.processing_time_ms = int((time.time() - self.started_at) * 1000)
