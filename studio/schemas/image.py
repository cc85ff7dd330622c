"""Image job schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from studio.gateway.types import JobMode, JobStatus

ResponseFormat = Literal["url", "b64_json"]


class ImageGenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    model: str | None = Field(None, min_length=1, max_length=100)
    aspect_ratio: str | None = Field(None, pattern=r"^\d+:\d+$")
    response_format: ResponseFormat | None = None


class ImageAsset(BaseModel):
    url: str | None = None
    image_url: str | None = None


class ImageEditRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    model: str | None = Field(None, min_length=1, max_length=100)
    # URL, data URI or raw base64; nested {"url"} / {"image_url"} also accepted
    image: str | ImageAsset | None = None
    image_url: str | None = None
    response_format: ResponseFormat | None = None

    @model_validator(mode="after")
    def _needs_image(self) -> "ImageEditRequest":
        if not (self.source or "").strip():
            raise ValueError("image.image_url (or image.url / image_url) is required")
        return self

    @property
    def source(self) -> str | None:
        if isinstance(self.image, str):
            return self.image
        if self.image is not None:
            return self.image.url or self.image.image_url
        return self.image_url


class ImageInputsResponse(BaseModel):
    aspect_ratio: str | None
    response_format: str | None
    image_source: str | None

    model_config = {"from_attributes": True}


class ImageJobResponse(BaseModel):
    id: str
    mode: JobMode
    prompt: str
    status: JobStatus
    created_at: datetime
    key_id: str | None
    inputs: ImageInputsResponse
    images: list[str]
    error: str | None

    model_config = {"from_attributes": True}


class ImageJobListResponse(BaseModel):
    items: list[ImageJobResponse]
    total: int
