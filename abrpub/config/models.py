from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator

SUPPORTED_ENCODERS = {"libx264", "h264_nvenc", "h264_qsv", "h264_vaapi"}

class GeneralConfig(BaseModel):
    workspace_dir: Path = Field(default_factory=lambda: Path("/tmp/abrpub"))
    log_dir: Path = Field(default_factory=lambda: Path("logs"))
    segment_duration: int = Field(default=6, gt=0, le=60)
    include_lower_rendition: bool = False
    batch_size: int = Field(default=3, gt=0)
    delete_original: bool = False
    keep_workspace_on_success: bool = False
    debug: bool = False

class LadderConfig(BaseModel):
    target_fraction: float = Field(default=0.95, gt=0.0, le=1.0)
    max_fraction: float = Field(default=1.1, gt=0.0)
    buffer_fraction: float = Field(default=1.5, gt=0.0)
    bitrate_floor: int = Field(default=2_000_000, gt=0)  # bps
    original_audio_bitrate: int = Field(default=192, gt=0)  # kbps
    lower_name: str = "480p"
    lower_width: int = Field(default=854, gt=0)
    lower_height: int = Field(default=480, gt=0)
    lower_video_bitrate: int = Field(default=1400, gt=0)
    lower_max_bitrate: int = Field(default=1498, gt=0)
    lower_buffer_size: int = Field(default=2100, gt=0)
    lower_audio_bitrate: int = Field(default=128, gt=0)

    @field_validator('max_fraction', 'buffer_fraction')
    @classmethod
    def validate_headroom(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError(f"Peak/buffer fraction {v} must be at least 1.0")
        return v

class EncoderConfig(BaseModel):
    force_encoder: Optional[str] = None
    validate_encoder: bool = True
    timeout_seconds: int = Field(default=6 * 3600, gt=0)
    probe_timeout_seconds: int = Field(default=30, gt=0)
    vaapi_device: str = "/dev/dri/renderD128"
    # Output accepted despite a non-zero exit code when it verifies.
    min_accepted_segments: int = Field(default=1, ge=1)
    segment_tolerance: int = Field(default=1, ge=0)
    accept_partial_output: bool = False

    @field_validator('force_encoder')
    @classmethod
    def validate_encoder_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in SUPPORTED_ENCODERS:
            raise ValueError(f"Unsupported encoder {v}. Must be one of {sorted(SUPPORTED_ENCODERS)}.")
        return v

class StorageConfig(BaseModel):
    endpoint_url: Optional[str] = None
    bucket: str = ""
    region: str = "auto"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    root_prefix: str = "hls"
    connect_timeout: int = Field(default=10, gt=0)
    read_timeout: int = Field(default=60, gt=0)
    max_pool_connections: int = Field(default=32, gt=0)

class PublisherConfig(BaseModel):
    batch_size: int = Field(default=10, gt=0)
    batch_delay_seconds: float = Field(default=0.2, ge=0.0)
    max_attempts: int = Field(default=5, gt=0)
    backoff_initial_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=16.0, ge=0.0)
    segment_cache_control: str = "public, max-age=31536000, immutable"
    playlist_cache_control: str = "public, max-age=60"
    master_cache_control: str = "public, max-age=300"

class DownloadConfig(BaseModel):
    max_attempts: int = Field(default=4, gt=0)
    backoff_initial_seconds: float = Field(default=2.0, ge=0.0)
    backoff_max_seconds: float = Field(default=60.0, ge=0.0)
    chunk_size: int = Field(default=8 * 1024 * 1024, gt=0)

class WebhookConfig(BaseModel):
    url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)

class CatalogConfig(BaseModel):
    path: Path = Field(default_factory=lambda: Path("catalog.db"))

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    ladder: LadderConfig = Field(default_factory=LadderConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
