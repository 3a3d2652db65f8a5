"""Pydantic models for payloads, video records, provider state and configuration."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .queue.models import (  # noqa: F401
    GENERATION_QUEUE_DEFAULTS,
    PUBLISH_QUEUE_DEFAULTS,
    FailureKind,
    HandlerResult,
    QueueSettings,
)

GENERATION_QUEUE = GENERATION_QUEUE_DEFAULTS.name
PUBLISH_QUEUE = PUBLISH_QUEUE_DEFAULTS.name
GENERATE_VIDEO = "generate-video"
PUBLISH_VIDEO = "publish-video"


# --- Video record ---


class VideoStatus(str, Enum):
    """Lifecycle of a video record (see state.py for legal transitions)."""

    PENDING = "PENDING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    POSTED = "POSTED"
    ARCHIVED = "ARCHIVED"


class Video(BaseModel):
    """Video row as seen by the orchestration core."""

    id: str
    user_id: str
    title: Optional[str] = None
    status: VideoStatus = VideoStatus.PENDING
    video_url: Optional[str] = None
    generated_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    instagram_post_id: Optional[str] = None
    instagram_permalink: Optional[str] = None
    updated_at: Optional[datetime] = None


class UserSettings(BaseModel):
    """Per-user publishing defaults read from the record store."""

    user_id: str
    default_caption: Optional[str] = None
    default_hashtags: List[str] = Field(default_factory=list)


# --- Job payloads (immutable once enqueued) ---


class PublishSettings(BaseModel):
    """How to publish an artifact. Carries a credential reference, never a token."""

    model_config = ConfigDict(frozen=True)

    credential_ref: str = Field(..., min_length=1, description="Key resolved by CredentialResolver")
    caption: Optional[str] = Field(default=None, description="Explicit caption")
    tags: Optional[List[str]] = Field(default=None, description="Hashtags, with or without '#'")
    auto_publish: bool = Field(
        default=True, description="Chain a publish job when generation succeeds"
    )


class GenerationJobPayload(BaseModel):
    """Payload of a generate-video job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    video_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1, max_length=1000)
    source_image_url: str = Field(..., min_length=1)
    width: int = Field(default=720, gt=0)
    height: int = Field(default=1280, gt=0)
    fps: int = Field(default=24, gt=0, le=120)
    quality: Literal["low", "medium", "high"] = "high"
    content_type: Optional[str] = None
    viral_optimization: bool = False
    variation_count: Optional[int] = Field(default=None, ge=1, le=10)
    seed: Optional[int] = Field(default=None, ge=0)
    publish_settings: Optional[PublishSettings] = None

    @field_validator("source_image_url")
    @classmethod
    def url_scheme(cls, v: str) -> str:
        if not v.startswith(("http://", "https://", "data:")):
            raise ValueError("source_image_url must be an http(s) or data URI")
        return v

    @property
    def ratio(self) -> str:
        return f"{self.width}:{self.height}"

    @property
    def chains_publish(self) -> bool:
        return self.publish_settings is not None and self.publish_settings.auto_publish


class PublishJobPayload(BaseModel):
    """Payload of a publish-video job."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    video_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    artifact_url: str = Field(..., min_length=1)
    publish_settings: PublishSettings


# --- External task state (ephemeral, never persisted) ---


class ProviderTaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExternalTaskHandle(BaseModel):
    """Snapshot of a generation provider task."""

    external_task_id: str
    provider_status: ProviderTaskStatus
    output_url: Optional[str] = None
    failure: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.provider_status in (ProviderTaskStatus.SUCCEEDED, ProviderTaskStatus.FAILED)


class MediaStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    ERROR = "error"
    UNKNOWN = "unknown"


class PublishReceipt(BaseModel):
    publish_id: str
    permalink: Optional[str] = None


# --- Configuration ---


class WorkerConfig(BaseModel):
    """Worker pool behaviour shared by both queues."""

    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Idle slot wait before re-checking the queue"
    )
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="Lease extension period while a handler runs"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, ge=0.0, description="How long stop() waits for in-flight handlers"
    )


class GenerationConfig(BaseModel):
    """Generation provider settings."""

    api_base_url: str = Field(default="https://api.dev.runwayml.com/v1")
    api_version: str = Field(default="2024-11-06", description="X-Runway-Version header")
    api_key_env: str = Field(default="RUNWAYML_API_SECRET", description="Env var holding the key")
    model: str = Field(default="gen4_turbo")
    duration_s: int = Field(default=10, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0.0)
    poll_interval_s: float = Field(default=5.0, ge=0.0)
    max_poll_attempts: int = Field(default=120, ge=1)
    max_poll_errors: int = Field(
        default=3, ge=1, description="Consecutive failed status requests before giving up"
    )


class PublishingConfig(BaseModel):
    """Publish platform settings."""

    api_base_url: str = Field(default="https://graph.facebook.com/v18.0")
    request_timeout_s: float = Field(default=30.0, gt=0.0)
    poll_request_timeout_s: float = Field(default=10.0, gt=0.0)
    poll_interval_s: float = Field(default=5.0, ge=0.0)
    max_poll_attempts: int = Field(default=20, ge=1)
    max_poll_timeouts: int = Field(default=3, ge=0)
    default_caption: str = Field(default="AI-generated reel!")
    default_hashtags: List[str] = Field(default_factory=lambda: ["#reels", "#viral", "#ai"])


def _default_generation_queue() -> QueueSettings:
    return GENERATION_QUEUE_DEFAULTS.model_copy(deep=True)


def _default_publish_queue() -> QueueSettings:
    return PUBLISH_QUEUE_DEFAULTS.model_copy(deep=True)


class ReelcastConfig(BaseModel):
    """Complete application configuration with validation."""

    database_path: str = Field(default="data/reelcast.db", description="Queue + record store")
    log_level: str = Field(default="INFO")
    retention_hours: float = Field(
        default=24.0, gt=0.0, description="Age after which terminal jobs are purged"
    )
    generation_queue: QueueSettings = Field(default_factory=_default_generation_queue)
    publish_queue: QueueSettings = Field(default_factory=_default_publish_queue)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    publishing: PublishingConfig = Field(default_factory=PublishingConfig)
    credentials: Dict[str, str] = Field(
        default_factory=dict,
        description="credential_ref -> environment variable holding the token",
    )

    @field_validator("generation_queue")
    @classmethod
    def generation_queue_name(cls, v: QueueSettings) -> QueueSettings:
        if v.name != GENERATION_QUEUE:
            raise ValueError(f"generation_queue.name must be '{GENERATION_QUEUE}'")
        return v

    @field_validator("publish_queue")
    @classmethod
    def publish_queue_name(cls, v: QueueSettings) -> QueueSettings:
        if v.name != PUBLISH_QUEUE:
            raise ValueError(f"publish_queue.name must be '{PUBLISH_QUEUE}'")
        return v

    @classmethod
    def from_dict(cls, data: dict) -> "ReelcastConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ReelcastConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["database_path"] = cli_args["db"]
        if cli_args.get("log_level") is not None:
            config_dict["log_level"] = cli_args["log_level"]
        if cli_args.get("generation_workers") is not None:
            config_dict["generation_queue"]["concurrency"] = cli_args["generation_workers"]
        if cli_args.get("publish_workers") is not None:
            config_dict["publish_queue"]["concurrency"] = cli_args["publish_workers"]

        return ReelcastConfig.from_dict(config_dict)
