"""Key pool endpoints — add, bulk import, toggle, remove and health-check credentials.

Secrets are write-only: every response carries a masked preview.
"""

from fastapi import APIRouter, Depends

from studio.core.dependencies import get_studio_service
from studio.gateway.key_pool import parse_bulk_keys
from studio.schemas.common import MessageResponse
from studio.schemas.key import KeyBulkRequest, KeyBulkResponse, KeyCreateRequest, KeyListResponse, KeyResponse
from studio.services.studio_service import StudioService

router = APIRouter(prefix="/keys", tags=["keys"])


@router.get("", response_model=KeyListResponse)
async def list_keys(service: StudioService = Depends(get_studio_service)):
    entries = service.list_keys()
    return KeyListResponse(
        items=[KeyResponse.from_entry(e) for e in entries],
        total=len(entries),
        cursor=service.pool.cursor,
    )


@router.post("", response_model=KeyResponse, status_code=201)
async def add_key(body: KeyCreateRequest, service: StudioService = Depends(get_studio_service)):
    return KeyResponse.from_entry(service.add_key(body.key, body.label))


@router.post("/bulk", response_model=KeyBulkResponse, status_code=201)
async def import_keys(body: KeyBulkRequest, service: StudioService = Depends(get_studio_service)):
    """Import newline-separated keys (``label|key`` or bare ``key``)."""
    submitted = len(parse_bulk_keys(body.text))
    added = service.import_keys(body.text)
    return KeyBulkResponse(
        created=len(added),
        skipped=submitted - len(added),
        items=[KeyResponse.from_entry(e) for e in added],
    )


@router.post("/check", response_model=KeyListResponse)
async def check_all_keys(service: StudioService = Depends(get_studio_service)):
    """Check every key in turn, spaced out to avoid tripping rate limits."""
    await service.check_all_keys()
    entries = service.list_keys()
    return KeyListResponse(
        items=[KeyResponse.from_entry(e) for e in entries],
        total=len(entries),
        cursor=service.pool.cursor,
    )


@router.post("/{key_id}/toggle", response_model=KeyResponse)
async def toggle_key(key_id: str, service: StudioService = Depends(get_studio_service)):
    return KeyResponse.from_entry(service.toggle_key(key_id))


@router.post("/{key_id}/check", response_model=KeyResponse)
async def check_key(key_id: str, service: StudioService = Depends(get_studio_service)):
    return KeyResponse.from_entry(await service.check_key(key_id))


@router.delete("/{key_id}", response_model=MessageResponse)
async def remove_key(key_id: str, service: StudioService = Depends(get_studio_service)):
    service.remove_key(key_id)
    return MessageResponse(message="API key removed")
