"""Image jobs — generate / edit return their result immediately."""

import base64

from fastapi import APIRouter, Depends, File, Form, UploadFile

from studio.core.dependencies import get_studio_service
from studio.core.exceptions import InputValidationError
from studio.schemas.common import ClearedResponse
from studio.schemas.image import (
    ImageEditRequest,
    ImageGenerateRequest,
    ImageJobListResponse,
    ImageJobResponse,
    ResponseFormat,
)
from studio.services.studio_service import StudioService

router = APIRouter(prefix="/images", tags=["images"])


@router.post("/generations", response_model=ImageJobResponse, status_code=201)
async def generate_image(body: ImageGenerateRequest, service: StudioService = Depends(get_studio_service)):
    job = await service.generate_image(
        body.prompt,
        aspect_ratio=body.aspect_ratio,
        response_format=body.response_format,
        model=body.model,
    )
    return ImageJobResponse.model_validate(job)


@router.post("/edits", response_model=ImageJobResponse, status_code=201)
async def edit_image(body: ImageEditRequest, service: StudioService = Depends(get_studio_service)):
    job = await service.edit_image(
        body.prompt,
        body.source,
        response_format=body.response_format,
        model=body.model,
    )
    return ImageJobResponse.model_validate(job)


@router.post("/edits/upload", response_model=ImageJobResponse, status_code=201)
async def edit_uploaded_image(
    image: UploadFile = File(..., description="Source image (png, jpeg, webp)"),
    prompt: str = Form(""),
    model: str | None = Form(None, min_length=1, max_length=100),
    response_format: ResponseFormat | None = Form(None),
    service: StudioService = Depends(get_studio_service),
):
    """Edit an uploaded file; it is forwarded inline as a data URI."""
    content = await image.read()
    if not content:
        raise InputValidationError("Uploaded image is empty")

    data_uri = f"data:{image.content_type or 'image/png'};base64,{base64.b64encode(content).decode('ascii')}"
    job = await service.edit_image(
        prompt,
        data_uri,
        response_format=response_format,
        model=model,
        source_hint=f"upload:{image.filename or 'image'}",
    )
    return ImageJobResponse.model_validate(job)


@router.get("", response_model=ImageJobListResponse)
async def list_images(service: StudioService = Depends(get_studio_service)):
    jobs = service.list_images()
    return ImageJobListResponse(items=[ImageJobResponse.model_validate(j) for j in jobs], total=len(jobs))


@router.delete("", response_model=ClearedResponse)
async def clear_images(service: StudioService = Depends(get_studio_service)):
    return ClearedResponse(cleared=service.clear_images())
