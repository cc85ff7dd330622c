from fastapi import APIRouter

from studio.api.v1.images import router as images_router
from studio.api.v1.keys import router as keys_router
from studio.api.v1.videos import router as videos_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(videos_router)
api_v1_router.include_router(images_router)
api_v1_router.include_router(keys_router)
