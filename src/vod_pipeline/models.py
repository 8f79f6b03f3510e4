"""Pydantic models for configuration and data validation."""

import re
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")


class QualityProfile(BaseModel):
    """One rendition of the adaptive ladder."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Rendition label, e.g. '1080p'")
    resolution: str = Field(..., description="Target frame size as WxH")
    bitrate_kbps: int = Field(..., gt=0, description="Target video bitrate in kbit/s")
    max_bitrate_kbps: int = Field(..., gt=0, description="Peak video bitrate in kbit/s")
    buffer_size_kbps: int = Field(..., gt=0, description="Rate control buffer in kbit")

    @field_validator("name")
    @classmethod
    def name_is_filename_safe(cls, v: str) -> str:
        """Profile names become file names, so keep them to a safe alphabet."""
        if not re.match(r"^[A-Za-z0-9_-]+$", v):
            raise ValueError(f"profile name must match [A-Za-z0-9_-]+, got {v!r}")
        return v

    @field_validator("resolution")
    @classmethod
    def resolution_is_wxh(cls, v: str) -> str:
        if not RESOLUTION_RE.match(v):
            raise ValueError(f"resolution must look like 1920x1080, got {v!r}")
        return v

    @model_validator(mode="after")
    def max_bitrate_not_below_target(self) -> "QualityProfile":
        if self.max_bitrate_kbps < self.bitrate_kbps:
            raise ValueError(
                f"max_bitrate_kbps ({self.max_bitrate_kbps}) must be >= "
                f"bitrate_kbps ({self.bitrate_kbps})"
            )
        return self

    @property
    def width(self) -> int:
        return int(RESOLUTION_RE.match(self.resolution).group(1))

    @property
    def height(self) -> int:
        return int(RESOLUTION_RE.match(self.resolution).group(2))

    @property
    def bandwidth(self) -> int:
        """Bitrate in bits per second, as advertised in the master playlist."""
        return self.bitrate_kbps * 1000

    @property
    def playlist_name(self) -> str:
        return f"{self.name}.m3u8"

    @property
    def segment_pattern(self) -> str:
        return f"{self.name}_%03d.ts"


DEFAULT_QUALITY_PROFILES: Tuple[QualityProfile, ...] = (
    QualityProfile(
        name="1080p", resolution="1920x1080",
        bitrate_kbps=5000, max_bitrate_kbps=5350, buffer_size_kbps=7500,
    ),
    QualityProfile(
        name="720p", resolution="1280x720",
        bitrate_kbps=2800, max_bitrate_kbps=2996, buffer_size_kbps=4200,
    ),
    QualityProfile(
        name="480p", resolution="854x480",
        bitrate_kbps=1400, max_bitrate_kbps=1498, buffer_size_kbps=2100,
    ),
    QualityProfile(
        name="360p", resolution="640x360",
        bitrate_kbps=800, max_bitrate_kbps=856, buffer_size_kbps=1200,
    ),
)


class QueueConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["redis", "sqlite"] = Field(
        default="redis", description="Queue transport: redis list or local SQLite table"
    )
    name: str = Field(default="transcoding:jobs", description="Queue (list) name")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    sqlite_path: str = Field(default="queue.db", description="SQLite file for the local queue")
    consume_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Max time a consume call blocks waiting for a job"
    )
    poll_interval_s: float = Field(
        default=0.25, gt=0.0, description="Polling interval for the SQLite queue"
    )
    error_backoff_s: float = Field(
        default=1.0, ge=0.0, description="Pause after a queue transport error before retrying"
    )


class StorageConfig(BaseModel):
    """Object storage settings."""

    backend: Literal["s3", "local"] = Field(default="s3", description="Object store backend")
    endpoint_url: Optional[str] = Field(
        default="http://localhost:9000", description="S3-compatible endpoint (MinIO)"
    )
    public_endpoint_url: Optional[str] = Field(
        default=None, description="Endpoint used when building public object URLs"
    )
    access_key: Optional[str] = Field(default=None, description="Access key id")
    secret_key: Optional[str] = Field(default=None, description="Secret access key")
    region: str = Field(default="us-east-1", description="Signing region")
    bucket_raw: str = Field(default="videos-raw", description="Private bucket for source uploads")
    bucket_processed: str = Field(
        default="videos-processed", description="Public-read bucket for renditions"
    )
    local_path: str = Field(default="./storage", description="Root directory for local backend")
    create_buckets: bool = Field(
        default=True, description="Create buckets (and public policy) on worker startup"
    )

    @model_validator(mode="after")
    def buckets_differ(self) -> "StorageConfig":
        if self.bucket_raw == self.bucket_processed:
            raise ValueError("bucket_raw and bucket_processed must be different buckets")
        return self


class RecordStoreConfig(BaseModel):
    """Processing record store settings."""

    db_path: str = Field(default="records.db", description="SQLite file holding processing records")


class EncoderConfig(BaseModel):
    """Video encoder selection policy."""

    backend: Optional[str] = Field(
        default=None,
        description="Force a specific encoder (e.g. libx264) and skip hardware probing",
    )
    priority: List[str] = Field(
        default_factory=lambda: ["h264_nvenc", "h264_vaapi", "libx264", "libopenh264"],
        description="Encoders to probe, most preferred first",
    )
    fallback: str = Field(default="mpeg4", description="Baseline codec when nothing probes OK")
    vaapi_device: str = Field(default="/dev/dri/renderD128", description="VAAPI render node")
    probe_timeout_s: float = Field(default=15.0, gt=0.0, description="Timeout per probe encode")


class FfmpegConfig(BaseModel):
    """FFmpeg runner settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = imageio-ffmpeg lookup)"
    )
    global_timeout_s: int = Field(
        default=7200, gt=0, description="Maximum duration of one encode in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=300, gt=0, description="Kill the encode if no progress is reported for this long"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and a replay script when an encode fails"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Where failure artifacts go (None = system temp dir)"
    )
    max_failure_artifacts: int = Field(
        default=50, ge=1, description="Failed encodes whose log and replay script are kept"
    )
    loglevel: str = Field(default="error", description="ffmpeg -loglevel value")


class TranscodeConfig(BaseModel):
    """Adaptive streaming output settings."""

    profiles: List[QualityProfile] = Field(
        default_factory=lambda: list(DEFAULT_QUALITY_PROFILES),
        min_length=1,
        description="Renditions to produce, in master playlist order",
    )
    segment_duration_s: int = Field(default=10, gt=0, description="Target HLS segment duration")
    playlist_version: int = Field(default=3, ge=1, description="#EXT-X-VERSION value")
    audio_codec: str = Field(default="aac", description="Audio codec for every rendition")
    audio_bitrate: str = Field(default="128k", description="Audio bitrate")
    audio_channels: int = Field(default=2, ge=1, le=8, description="Audio channel count")
    software_preset: str = Field(default="fast", description="libx264 preset")
    work_dir: str = Field(
        default="/tmp/transcoding", description="Root under which per-job work dirs are created"
    )
    max_parallel_renditions: int = Field(
        default=1, ge=1, description="Profiles encoded concurrently (1 = sequential)"
    )

    @field_validator("profiles")
    @classmethod
    def profile_names_unique(cls, v: List[QualityProfile]) -> List[QualityProfile]:
        names = [p.name for p in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate profile names: {', '.join(duplicates)}")
        return v


class WorkerConfig(BaseModel):
    """Worker process settings."""

    shutdown_timeout_s: float = Field(
        default=30.0, gt=0.0, description="How long to wait for the loop to stop on shutdown"
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["text", "json"] = Field(default="text", description="Log output format")
    worker_id: Optional[str] = Field(
        default=None, description="Worker identity in audit logs (None = host-pid)"
    )


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    records: RecordStoreConfig = Field(default_factory=RecordStoreConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("encoder") is not None:
            config_dict["encoder"]["backend"] = cli_args["encoder"]
        if cli_args.get("parallel") is not None:
            config_dict["transcode"]["max_parallel_renditions"] = cli_args["parallel"]
        if cli_args.get("work_dir") is not None:
            config_dict["transcode"]["work_dir"] = cli_args["work_dir"]
        if cli_args.get("queue_backend") is not None:
            config_dict["queue"]["backend"] = cli_args["queue_backend"]
        if cli_args.get("storage_backend") is not None:
            config_dict["storage"]["backend"] = cli_args["storage_backend"]
        if cli_args.get("log_level") is not None:
            config_dict["worker"]["log_level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)
