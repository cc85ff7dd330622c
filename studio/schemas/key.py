"""Key pool schemas. Secrets never leave the server: responses carry a masked preview."""

from datetime import datetime

from pydantic import BaseModel, Field

from studio.gateway.normalizer import mask_key
from studio.gateway.types import ApiKeyEntry, KeyHealth


class KeyCreateRequest(BaseModel):
    key: str = Field(min_length=1, max_length=500)
    label: str | None = Field(None, max_length=100)


class KeyBulkRequest(BaseModel):
    text: str = Field(min_length=1, description="One key per line, optionally 'label|key'")


class KeyResponse(BaseModel):
    id: str
    label: str
    key_preview: str  # first 4 + "…" + last 4
    enabled: bool
    health: KeyHealth
    last_checked_at: datetime | None
    last_error: str | None
    has_video_model: bool | None
    has_image_model: bool | None

    @classmethod
    def from_entry(cls, entry: ApiKeyEntry) -> "KeyResponse":
        return cls(
            id=entry.id,
            label=entry.label,
            key_preview=mask_key(entry.key),
            enabled=entry.enabled,
            health=entry.health,
            last_checked_at=entry.last_checked_at,
            last_error=entry.last_error,
            has_video_model=entry.has_video_model,
            has_image_model=entry.has_image_model,
        )


class KeyListResponse(BaseModel):
    items: list[KeyResponse]
    total: int
    cursor: int


class KeyBulkResponse(BaseModel):
    created: int
    skipped: int
    items: list[KeyResponse]
