"""Studio service — wires the key pool, dispatcher, registry and polling engine.

One instance per process. The API layer calls into it; nothing below it
knows about HTTP.

Flow for a video job:
  1. Build the endpoint-specific payload (generate vs. edit)
  2. Dispatch it across the key pool
  3. Record the job (``processing``) under the server-assigned request id
  4. Hand it to the polling engine as the active job

Image jobs return their result in the submit response and are recorded
terminal (``ready`` / ``error``) right away.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from studio.core.config import settings
from studio.core.exceptions import InputValidationError, NotFoundError, UpstreamRequestError
from studio.gateway.dispatcher import DispatchOutcome, RequestDispatcher
from studio.gateway.health import KeyHealthChecker
from studio.gateway.key_pool import KeyPool
from studio.gateway.normalizer import extract_image_urls, is_http_url, normalize_image_source
from studio.gateway.poller import PollingEngine
from studio.gateway.types import (
    MAX_IMAGE_RESULTS,
    ApiKeyEntry,
    ImageInputs,
    ImageJob,
    JobKind,
    JobMode,
    JobStatus,
    UpstreamResult,
    VideoInputs,
    VideoJob,
)
from studio.gateway.xai_client import (
    IMAGE_EDIT_PATH,
    IMAGE_GENERATE_PATH,
    VIDEO_EDIT_PATH,
    VIDEO_GENERATE_PATH,
    XaiClient,
)
from studio.store.persistence import SqlStateStorage, StateStore
from studio.store.registry import JobRegistry

logger = logging.getLogger(__name__)

INLINE_SOURCE_HINT = "upload:inline"
NO_IMAGES_MESSAGE = "No image URLs returned."


def _source_hint(value: str | None) -> str | None:
    """What to remember about an input asset: its URL, or a hint for inline data."""
    if not value:
        return None
    return value if is_http_url(value) else INLINE_SOURCE_HINT


def _require_prompt(prompt: str) -> str:
    trimmed = (prompt or "").strip()
    if not trimmed:
        raise InputValidationError("Prompt is required")
    return trimmed


def _request_id(data: Any) -> str | None:
    request_id = data.get("request_id") if isinstance(data, dict) else None
    return request_id if isinstance(request_id, str) and request_id else None


def _require_request_id(result: UpstreamResult) -> None:
    if _request_id(result.data) is None:
        raise UpstreamRequestError("xAI response missing request_id", 502)


class StudioService:
    """Process-wide owner of the orchestration components.

    Usage:
        service = await StudioService.from_store(store)
        await service.startup()                 # resumes polling the latest processing job
        job = await service.start_video("a cat surfing")
        ...
        await service.shutdown()
    """

    def __init__(
        self,
        pool: KeyPool | None = None,
        registry: JobRegistry | None = None,
        client: XaiClient | None = None,
        store: StateStore | None = None,
        poll_interval: float | None = None,
        check_spacing: float | None = None,
    ):
        self.pool = pool if pool is not None else KeyPool()
        self.registry = registry if registry is not None else JobRegistry()
        self.client = client or XaiClient()
        self.store = store

        self.dispatcher = RequestDispatcher(self.pool)
        self.engine = PollingEngine(
            self.registry,
            self.pool,
            self.client.query_status,
            interval=poll_interval,
            allow_anonymous=self.client.has_default_key,
        )
        self.health = KeyHealthChecker(self.pool, self.client.check_credential, spacing=check_spacing)

    @classmethod
    async def from_store(cls, store: StateStore, **kwargs: Any) -> StudioService:
        """Load persisted state and mirror every later mutation back to it."""
        pool = await store.load_pool()
        registry = await store.load_registry()
        store.bind(pool, registry)
        logger.info(
            "Loaded state: %d key(s), %d video job(s), %d image job(s)",
            len(pool),
            len(registry.video_jobs),
            len(registry.image_jobs),
        )
        return cls(pool=pool, registry=registry, store=store, **kwargs)

    # -- Lifecycle ------------------------------------------------------------

    async def startup(self) -> None:
        """Make the most recent processing job active so polling picks up where it left off."""
        for job in self.registry.video_jobs:
            if job.status == JobStatus.PROCESSING:
                self.engine.activate(job.request_id)
                logger.info("Resumed polling for job %s", job.request_id)
                return

    async def shutdown(self) -> None:
        await self.engine.shutdown()
        if self.store is not None:
            await self.store.close()
        await self.client.aclose()

    # -- Video jobs -----------------------------------------------------------

    async def start_video(
        self,
        prompt: str,
        mode: JobMode = JobMode.GENERATE,
        *,
        duration: int | None = None,
        aspect_ratio: str | None = None,
        resolution: str | None = None,
        image_url: str | None = None,
        video_url: str | None = None,
        model: str | None = None,
    ) -> VideoJob:
        """Submit a video job and make it the active, polled job."""
        prompt = _require_prompt(prompt)
        mode = JobMode(mode)
        image_url = normalize_image_source(image_url) if image_url else None
        video_url = (video_url or "").strip() or None

        payload: dict[str, Any] = {"model": model or settings.video_model, "prompt": prompt}
        if aspect_ratio:
            payload["aspect_ratio"] = aspect_ratio
        if resolution:
            payload["resolution"] = resolution

        if mode == JobMode.EDIT:
            if not video_url:
                raise InputValidationError("video_url is required for edit mode")
            endpoint = VIDEO_EDIT_PATH
            payload["video_url"] = video_url
            payload["video"] = {"url": video_url}
        else:
            endpoint = VIDEO_GENERATE_PATH
            if duration is not None:
                payload["duration"] = duration
            if image_url:
                payload["image_url"] = image_url
                payload["image"] = {"url": image_url}

        outcome = await self._dispatch(
            endpoint,
            payload,
            allow_anonymous=self.client.has_default_key,
            accept=_require_request_id,
        )

        data = outcome.result.data
        request_id = _request_id(data)

        job = VideoJob(
            request_id=request_id,
            prompt=prompt,
            mode=mode,
            key_id=outcome.key_id,
            inputs=VideoInputs(
                duration=duration if mode == JobMode.GENERATE else None,
                aspect_ratio=aspect_ratio,
                resolution=resolution,
                image_url=_source_hint(image_url) if mode == JobMode.GENERATE else None,
                video_url=video_url if mode == JobMode.EDIT else None,
            ),
            raw=data,
        )
        self.registry.add(job)
        self.engine.activate(request_id)
        logger.info("Video job %s submitted (%s, %d attempt(s))", request_id, mode.value, outcome.attempts)
        return job

    def list_videos(self) -> tuple[VideoJob, ...]:
        return self.registry.video_jobs

    def get_video(self, request_id: str) -> VideoJob:
        return self.registry.require(JobKind.VIDEO, request_id)

    def activate_video(self, request_id: str) -> VideoJob:
        self.engine.activate(request_id)
        return self.get_video(request_id)

    def stop_video(self, request_id: str) -> VideoJob:
        return self.engine.stop(request_id)

    def resume_video(self, request_id: str) -> VideoJob:
        return self.engine.resume(request_id)

    async def refresh_video(self, request_id: str) -> VideoJob:
        job = await self.engine.refresh_once(request_id)
        if job is None:
            raise NotFoundError(f"Video job {request_id} not found")
        return job

    def clear_videos(self) -> int:
        self.engine.deactivate()
        return self.registry.clear(JobKind.VIDEO)

    # -- Image jobs -----------------------------------------------------------

    async def generate_image(
        self,
        prompt: str,
        *,
        aspect_ratio: str | None = None,
        response_format: str | None = None,
        model: str | None = None,
    ) -> ImageJob:
        prompt = _require_prompt(prompt)
        payload: dict[str, Any] = {"model": model or settings.image_model, "prompt": prompt}
        if aspect_ratio:
            payload["aspect_ratio"] = aspect_ratio
        if response_format:
            payload["response_format"] = response_format

        outcome = await self._dispatch(IMAGE_GENERATE_PATH, payload)
        return self._record_image(
            outcome,
            prompt=prompt,
            mode=JobMode.GENERATE,
            inputs=ImageInputs(aspect_ratio=aspect_ratio, response_format=response_format),
        )

    async def edit_image(
        self,
        prompt: str,
        image: str,
        *,
        response_format: str | None = None,
        model: str | None = None,
        source_hint: str | None = None,
    ) -> ImageJob:
        """Edit an image given as a URL, data URI or raw base64.

        ``source_hint`` replaces what is remembered about the input, e.g. the
        original file name of an upload.
        """
        prompt = _require_prompt(prompt)
        source = normalize_image_source(image or "")
        if not source:
            raise InputValidationError("An image (URL, data URI or base64) is required for edits")

        payload: dict[str, Any] = {
            "model": model or settings.image_model,
            "prompt": prompt,
            "image_url": source,
            "image": {"url": source},
        }
        if response_format:
            payload["response_format"] = response_format

        outcome = await self._dispatch(IMAGE_EDIT_PATH, payload)
        return self._record_image(
            outcome,
            prompt=prompt,
            mode=JobMode.EDIT,
            inputs=ImageInputs(response_format=response_format, image_source=source_hint or _source_hint(source)),
        )

    def _record_image(self, outcome: DispatchOutcome, *, prompt: str, mode: JobMode, inputs: ImageInputs) -> ImageJob:
        data = outcome.result.data
        images = tuple(extract_image_urls(data)[:MAX_IMAGE_RESULTS])
        job = ImageJob(
            prompt=prompt,
            mode=mode,
            status=JobStatus.READY if images else JobStatus.ERROR,
            key_id=outcome.key_id,
            inputs=inputs,
            images=images,
            error=None if images else NO_IMAGES_MESSAGE,
            raw=data,
        )
        self.registry.add(job)
        if job.error:
            logger.warning("Image job %s: %s", job.id, job.error)
        return job

    def list_images(self) -> tuple[ImageJob, ...]:
        return self.registry.image_jobs

    def clear_images(self) -> int:
        return self.registry.clear(JobKind.IMAGE)

    # -- Key pool -------------------------------------------------------------

    def list_keys(self) -> tuple[ApiKeyEntry, ...]:
        return self.pool.entries

    def add_key(self, key: str, label: str | None = None) -> ApiKeyEntry:
        entry = self.pool.add(key, label)
        if entry is None:
            raise InputValidationError("Key is blank or already in the pool")
        return entry

    def import_keys(self, text: str) -> list[ApiKeyEntry]:
        return self.pool.import_bulk(text)

    def toggle_key(self, key_id: str) -> ApiKeyEntry:
        return self.pool.toggle_enabled(key_id)

    def remove_key(self, key_id: str) -> None:
        self.pool.remove(key_id)

    async def check_key(self, key_id: str) -> ApiKeyEntry:
        return await self.health.check(key_id)

    async def check_all_keys(self) -> list[ApiKeyEntry]:
        return await self.health.check_all()

    # -- Internals ------------------------------------------------------------

    async def _dispatch(
        self,
        endpoint: str,
        payload: dict,
        *,
        allow_anonymous: bool = False,
        accept: Callable[[UpstreamResult], None] | None = None,
    ) -> DispatchOutcome:
        async def send(credential: str | None):
            return await self.client.submit(endpoint, payload, credential)

        return await self.dispatcher.dispatch(send, allow_anonymous=allow_anonymous, accept=accept)


async def create_studio_service() -> StudioService:
    """Build the service from settings: SQL-backed state, shared xAI client."""
    from studio.db.engine import create_state_engine

    storage = SqlStateStorage(create_state_engine())
    await storage.create_schema()
    return await StudioService.from_store(StateStore(storage))
