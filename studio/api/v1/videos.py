"""Video jobs — submit, list, and drive the active job's polling."""

from fastapi import APIRouter, Depends

from studio.core.dependencies import get_studio_service
from studio.gateway.types import VideoJob
from studio.schemas.common import ClearedResponse
from studio.schemas.video import StartVideoRequest, VideoJobListResponse, VideoJobResponse
from studio.services.studio_service import StudioService

router = APIRouter(prefix="/videos", tags=["videos"])


def _job_to_response(job: VideoJob, service: StudioService) -> VideoJobResponse:
    resp = VideoJobResponse.model_validate(job)
    resp.active = job.request_id == service.engine.active_job_id
    return resp


@router.post("", response_model=VideoJobResponse, status_code=201)
async def start_video(body: StartVideoRequest, service: StudioService = Depends(get_studio_service)):
    """Submit a video job. It becomes the active job and is polled until it settles."""
    job = await service.start_video(
        body.prompt,
        body.mode,
        duration=body.duration,
        aspect_ratio=body.aspect_ratio,
        resolution=body.resolution,
        image_url=body.source_image_url,
        video_url=body.source_video_url,
        model=body.model,
    )
    return _job_to_response(job, service)


@router.get("", response_model=VideoJobListResponse)
async def list_videos(service: StudioService = Depends(get_studio_service)):
    jobs = service.list_videos()
    return VideoJobListResponse(
        items=[_job_to_response(j, service) for j in jobs],
        total=len(jobs),
        active_request_id=service.engine.active_job_id,
    )


@router.delete("", response_model=ClearedResponse)
async def clear_videos(service: StudioService = Depends(get_studio_service)):
    return ClearedResponse(cleared=service.clear_videos())


@router.get("/{request_id}", response_model=VideoJobResponse)
async def get_video(request_id: str, service: StudioService = Depends(get_studio_service)):
    return _job_to_response(service.get_video(request_id), service)


@router.post("/{request_id}/activate", response_model=VideoJobResponse)
async def activate_video(request_id: str, service: StudioService = Depends(get_studio_service)):
    return _job_to_response(service.activate_video(request_id), service)


@router.post("/{request_id}/stop", response_model=VideoJobResponse)
async def stop_video(request_id: str, service: StudioService = Depends(get_studio_service)):
    return _job_to_response(service.stop_video(request_id), service)


@router.post("/{request_id}/resume", response_model=VideoJobResponse)
async def resume_video(request_id: str, service: StudioService = Depends(get_studio_service)):
    return _job_to_response(service.resume_video(request_id), service)


@router.post("/{request_id}/refresh", response_model=VideoJobResponse)
async def refresh_video(request_id: str, service: StudioService = Depends(get_studio_service)):
    """Query the job's status once, outside the poll loop."""
    return _job_to_response(await service.refresh_video(request_id), service)
