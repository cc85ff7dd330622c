"""Core types and DTOs for the job orchestration gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_KEYS = 20  # Key pool capacity
MAX_JOBS_PER_KIND = 25  # Job history kept per kind, most recent first
MAX_IMAGE_RESULTS = 6  # Images kept per image job

ASPECT_RATIOS = ("16:9", "4:3", "1:1", "9:16", "3:4", "3:2", "2:3")
RESOLUTIONS = ("720p", "480p")
RESPONSE_FORMATS = ("url", "b64_json")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class KeyHealth(str, Enum):
    """Last known health of a credential."""

    UNKNOWN = "unknown"
    OK = "ok"
    INVALID = "invalid"  # 401 / 403
    RATE_LIMITED = "rate_limited"  # 429
    ERROR = "error"  # anything else


class JobStatus(str, Enum):
    """Lifecycle of a job. READY and ERROR are terminal."""

    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"
    STOPPED = "stopped"  # Paused by the user, deferred jobs only

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.ERROR)


class JobMode(str, Enum):
    GENERATE = "generate"
    EDIT = "edit"


class JobKind(str, Enum):
    VIDEO = "video"  # Deferred, polled until ready
    IMAGE = "image"  # Immediate result, never polled


def health_for_status(status_code: int) -> KeyHealth:
    """Map a failed upstream HTTP status to the credential health it implies."""
    if status_code in (401, 403):
        return KeyHealth.INVALID
    if status_code == 429:
        return KeyHealth.RATE_LIMITED
    return KeyHealth.ERROR


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApiKeyEntry:
    """A single credential in the rotation pool."""

    key: str
    label: str = ""
    id: str = field(default_factory=new_id)
    enabled: bool = True
    health: KeyHealth = KeyHealth.UNKNOWN
    last_checked_at: datetime | None = None
    last_error: str | None = None

    # Capability flags discovered by a health check (None = not checked)
    has_video_model: bool | None = None
    has_image_model: bool | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "key": self.key,
            "enabled": self.enabled,
            "health": self.health.value,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_error": self.last_error,
            "has_video_model": self.has_video_model,
            "has_image_model": self.has_image_model,
        }


# ---------------------------------------------------------------------------
# Upstream round trip
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpstreamResult:
    """One request/response round trip to the upstream API.

    ``data`` is None for an empty body, the parsed JSON when parseable,
    otherwise the raw text.
    """

    ok: bool
    status: int
    data: Any = None

    @property
    def still_working(self) -> bool:
        return self.status == 202


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VideoInputs:
    duration: int | None = None
    aspect_ratio: str | None = None
    resolution: str | None = None
    image_url: str | None = None  # URL, or an "upload:<name>" hint for inline images
    video_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "duration": self.duration,
            "aspect_ratio": self.aspect_ratio,
            "resolution": self.resolution,
            "image_url": self.image_url,
            "video_url": self.video_url,
        }


@dataclass(frozen=True)
class VideoJob:
    """A deferred media job identified by the server-assigned request id."""

    request_id: str
    prompt: str
    mode: JobMode = JobMode.GENERATE
    status: JobStatus = JobStatus.PROCESSING
    created_at: datetime = field(default_factory=utcnow)
    key_id: str | None = None
    inputs: VideoInputs = field(default_factory=VideoInputs)
    last_state: str | None = None
    last_polled_at: datetime | None = None
    video_url: str | None = None
    error: str | None = None
    raw: Any = None  # Last upstream payload, kept in memory only

    kind = JobKind.VIDEO

    @property
    def id(self) -> str:
        return self.request_id

    def to_dict(self) -> dict:
        """Serialize without the raw payload."""
        return {
            "request_id": self.request_id,
            "mode": self.mode.value,
            "prompt": self.prompt,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "key_id": self.key_id,
            "inputs": self.inputs.to_dict(),
            "last_state": self.last_state,
            "last_polled_at": self.last_polled_at.isoformat() if self.last_polled_at else None,
            "video_url": self.video_url,
            "error": self.error,
        }


@dataclass(frozen=True)
class ImageInputs:
    aspect_ratio: str | None = None
    response_format: str | None = None
    image_source: str | None = None

    def to_dict(self) -> dict:
        return {
            "aspect_ratio": self.aspect_ratio,
            "response_format": self.response_format,
            "image_source": self.image_source,
        }


@dataclass(frozen=True)
class ImageJob:
    """An immediate-result job: terminal as soon as it is created."""

    prompt: str
    id: str = field(default_factory=new_id)
    mode: JobMode = JobMode.GENERATE
    status: JobStatus = JobStatus.READY
    created_at: datetime = field(default_factory=utcnow)
    key_id: str | None = None
    inputs: ImageInputs = field(default_factory=ImageInputs)
    images: tuple[str, ...] = ()
    error: str | None = None
    raw: Any = None

    kind = JobKind.IMAGE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "prompt": self.prompt,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "key_id": self.key_id,
            "inputs": self.inputs.to_dict(),
            "images": list(self.images),
            "error": self.error,
        }


Job = VideoJob | ImageJob
