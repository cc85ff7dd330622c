"""Credential health checks against the models listing endpoint.

A check lists the models visible to a key and records two capability
flags: whether the configured video and image models are available.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from studio.core.config import settings
from studio.core.exceptions import NotFoundError, TransportError
from studio.gateway.key_pool import KeyPool
from studio.gateway.normalizer import describe_upstream_error, extract_model_ids
from studio.gateway.types import ApiKeyEntry, KeyHealth, UpstreamResult, health_for_status, utcnow

logger = logging.getLogger(__name__)

CheckFn = Callable[[str], Awaitable[UpstreamResult]]


class KeyHealthChecker:
    def __init__(
        self,
        pool: KeyPool,
        check_credential: CheckFn,
        video_model: str | None = None,
        image_model: str | None = None,
        spacing: float | None = None,
    ):
        self.pool = pool
        self.check_credential = check_credential
        self.video_model = video_model or settings.video_model
        self.image_model = image_model or settings.image_model
        self.spacing = settings.key_check_spacing_seconds if spacing is None else spacing

    async def check(self, key_id: str) -> ApiKeyEntry:
        """Check one key and merge the outcome into its health."""
        entry = self.pool.get(key_id)
        if entry is None:
            raise NotFoundError(f"API key {key_id} not found")

        self.pool.set_health(key_id, health=KeyHealth.UNKNOWN, last_error=None)

        try:
            result = await self.check_credential(entry.key)
        except TransportError as e:
            return self._record(
                key_id,
                health=KeyHealth.ERROR,
                last_checked_at=utcnow(),
                last_error=e.message,
                has_video_model=None,
                has_image_model=None,
            )

        if not result.ok:
            health = health_for_status(result.status)
            logger.info("Key %s failed health check: HTTP %d", entry.label, result.status)
            return self._record(
                key_id,
                health=health,
                last_checked_at=utcnow(),
                last_error=describe_upstream_error(result.data, result.status),
                has_video_model=None,
                has_image_model=None,
            )

        model_ids = extract_model_ids(result.data)
        return self._record(
            key_id,
            health=KeyHealth.OK,
            last_checked_at=utcnow(),
            last_error=None,
            has_video_model=self.video_model in model_ids,
            has_image_model=self.image_model in model_ids,
        )

    def _record(self, key_id: str, **changes) -> ApiKeyEntry:
        entry = self.pool.set_health(key_id, **changes)
        if entry is None:
            # Removed from the pool while its check was in flight
            raise NotFoundError(f"API key {key_id} not found")
        return entry

    async def check_all(self) -> list[ApiKeyEntry]:
        """Check every key sequentially, spaced out to stay clear of rate limits."""
        results: list[ApiKeyEntry] = []
        key_ids = [e.id for e in self.pool.entries]
        for index, key_id in enumerate(key_ids):
            if index:
                await asyncio.sleep(self.spacing)
            try:
                results.append(await self.check(key_id))
            except NotFoundError:
                continue  # removed while we were checking
        return results
