"""Video job schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from studio.gateway.types import JobMode, JobStatus

AspectRatio = Literal["16:9", "4:3", "1:1", "9:16", "3:4", "3:2", "2:3"]
Resolution = Literal["720p", "480p"]


class UrlAsset(BaseModel):
    url: str = Field(min_length=1)


class StartVideoRequest(BaseModel):
    mode: JobMode = JobMode.GENERATE
    prompt: str = Field(min_length=1, max_length=4000)
    model: str | None = Field(None, min_length=1, max_length=100)
    duration: int | None = Field(None, ge=1, le=15)
    aspect_ratio: AspectRatio | None = None
    resolution: Resolution | None = None
    # Either the flat field or the nested asset form is accepted
    image_url: str | None = None
    image: UrlAsset | None = None
    video_url: str | None = None
    video: UrlAsset | None = None

    @model_validator(mode="after")
    def _edit_needs_video(self) -> "StartVideoRequest":
        if not self.prompt.strip():
            raise ValueError("Prompt is required")
        if self.mode == JobMode.EDIT and not self.source_video_url:
            raise ValueError("video.url (or video_url) is required for edit mode")
        return self

    @property
    def source_image_url(self) -> str | None:
        return self.image.url if self.image else self.image_url

    @property
    def source_video_url(self) -> str | None:
        return self.video.url if self.video else self.video_url


class VideoInputsResponse(BaseModel):
    duration: int | None
    aspect_ratio: str | None
    resolution: str | None
    image_url: str | None
    video_url: str | None

    model_config = {"from_attributes": True}


class VideoJobResponse(BaseModel):
    request_id: str
    mode: JobMode
    prompt: str
    status: JobStatus
    created_at: datetime
    key_id: str | None
    inputs: VideoInputsResponse
    last_state: str | None
    last_polled_at: datetime | None
    video_url: str | None
    error: str | None
    active: bool = False

    model_config = {"from_attributes": True}


class VideoJobListResponse(BaseModel):
    items: list[VideoJobResponse]
    total: int
    active_request_id: str | None
