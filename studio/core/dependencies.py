from fastapi import Request

from studio.services.studio_service import StudioService


def get_studio_service(request: Request) -> StudioService:
    """The process-wide service created in the app lifespan."""
    return request.app.state.studio
