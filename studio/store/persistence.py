"""Durable state: job history, the key pool and the rotation cursor.

Three independently versioned collections, each a JSON document under a
fixed storage key:

  imagine-video:jobs:v1       video jobs (no raw payloads), ≤ 25
  imagine-image:jobs:v1       image jobs (no raw payloads, http(s) images only), ≤ 25
  imagine:keys:v1             credential entries, ≤ 20
  imagine:keys:rr-index:v1    rotation cursor

Writes are best-effort and run on a background task: a failed write is
logged and swallowed, never failing the in-memory operation that
triggered it. Loads are tolerant: malformed records are dropped or defaulted.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from studio.core.encryption import decrypt_secret, encrypt_secret
from studio.db.base import Base
from studio.gateway.key_pool import KeyPool
from studio.gateway.normalizer import is_http_url
from studio.gateway.types import (
    MAX_IMAGE_RESULTS,
    MAX_JOBS_PER_KIND,
    MAX_KEYS,
    ApiKeyEntry,
    ImageInputs,
    ImageJob,
    Job,
    JobKind,
    JobMode,
    JobStatus,
    KeyHealth,
    VideoInputs,
    VideoJob,
    new_id,
)
from studio.models.state_record import StateRecord
from studio.store.registry import JobRegistry

logger = logging.getLogger(__name__)

VIDEO_JOBS_KEY = "imagine-video:jobs:v1"
IMAGE_JOBS_KEY = "imagine-image:jobs:v1"
KEYS_KEY = "imagine:keys:v1"
ROTATION_KEY = "imagine:keys:rr-index:v1"

JOBS_KEYS = {JobKind.VIDEO: VIDEO_JOBS_KEY, JobKind.IMAGE: IMAGE_JOBS_KEY}


# ---------------------------------------------------------------------------
# Raw key/value storage
# ---------------------------------------------------------------------------


class SqlStateStorage:
    """Key/value documents in the ``state_records`` table."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def read(self, storage_key: str) -> str | None:
        async with self._session_factory() as session:
            return await session.scalar(select(StateRecord.payload).where(StateRecord.storage_key == storage_key))

    async def write(self, storage_key: str, payload: str) -> None:
        async with self._session_factory.begin() as session:
            await session.merge(StateRecord(storage_key=storage_key, payload=payload))

    async def delete(self, storage_key: str) -> None:
        async with self._session_factory.begin() as session:
            await session.execute(delete(StateRecord).where(StateRecord.storage_key == storage_key))

    async def dispose(self) -> None:
        await self.engine.dispose()


# ---------------------------------------------------------------------------
# Record parsing (tolerant)
# ---------------------------------------------------------------------------


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _opt_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def _choice(value: Any, allowed: Iterable[str]) -> str | None:
    return value if isinstance(value, str) and value in allowed else None


def key_from_record(record: Any, index: int) -> ApiKeyEntry | None:
    if not isinstance(record, dict):
        return None
    stored = record.get("key")
    key = decrypt_secret(stored) if isinstance(stored, str) else ""
    if not key.strip():
        return None

    label = record.get("label")
    health = record.get("health")
    return ApiKeyEntry(
        key=key,
        id=_opt_str(record.get("id")) or new_id(),
        label=label.strip() if isinstance(label, str) and label.strip() else f"Key {index + 1}",
        enabled=record["enabled"] if isinstance(record.get("enabled"), bool) else True,
        health=KeyHealth(health) if health in KeyHealth._value2member_map_ else KeyHealth.UNKNOWN,
        last_checked_at=_parse_datetime(record.get("last_checked_at")),
        last_error=_opt_str(record.get("last_error")),
        has_video_model=_opt_bool(record.get("has_video_model")),
        has_image_model=_opt_bool(record.get("has_image_model")),
    )


def video_job_from_record(record: Any) -> VideoJob | None:
    if not isinstance(record, dict):
        return None
    request_id = _opt_str(record.get("request_id"))
    prompt = record.get("prompt")
    status = record.get("status")
    if not request_id or not isinstance(prompt, str) or status not in JobStatus._value2member_map_:
        return None

    inputs = record.get("inputs") if isinstance(record.get("inputs"), dict) else {}
    duration = inputs.get("duration")
    return VideoJob(
        request_id=request_id,
        prompt=prompt,
        mode=JobMode.EDIT if record.get("mode") == "edit" else JobMode.GENERATE,
        status=JobStatus(status),
        created_at=_parse_datetime(record.get("created_at")) or datetime.now(timezone.utc),
        key_id=_opt_str(record.get("key_id")),
        inputs=VideoInputs(
            duration=duration if isinstance(duration, int) and not isinstance(duration, bool) else None,
            aspect_ratio=_opt_str(inputs.get("aspect_ratio")),
            resolution=_opt_str(inputs.get("resolution")),
            image_url=_opt_str(inputs.get("image_url")),
            video_url=_opt_str(inputs.get("video_url")),
        ),
        last_state=_opt_str(record.get("last_state")),
        last_polled_at=_parse_datetime(record.get("last_polled_at")),
        video_url=_opt_str(record.get("video_url")),
        error=_opt_str(record.get("error")),
    )


def image_job_from_record(record: Any) -> ImageJob | None:
    if not isinstance(record, dict):
        return None
    prompt = record.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return None

    inputs = record.get("inputs") if isinstance(record.get("inputs"), dict) else {}
    images = record.get("images") if isinstance(record.get("images"), list) else []
    return ImageJob(
        prompt=prompt,
        id=_opt_str(record.get("id")) or new_id(),
        mode=JobMode.EDIT if record.get("mode") == "edit" else JobMode.GENERATE,
        status=JobStatus.ERROR if record.get("status") == "error" else JobStatus.READY,
        created_at=_parse_datetime(record.get("created_at")) or datetime.now(timezone.utc),
        key_id=_opt_str(record.get("key_id")),
        inputs=ImageInputs(
            aspect_ratio=_opt_str(inputs.get("aspect_ratio")),
            response_format=_choice(inputs.get("response_format"), ("url", "b64_json")),
            image_source=_opt_str(inputs.get("image_source")),
        ),
        images=tuple(v for v in images if isinstance(v, str))[:MAX_IMAGE_RESULTS],
        error=_opt_str(record.get("error")),
    )


def _job_record(job: Job) -> dict:
    record = job.to_dict()
    if job.kind == JobKind.IMAGE:
        # Inline data URIs would bloat storage; only remote URLs survive a reload
        record["images"] = [v for v in job.images if is_http_url(v)][:MAX_IMAGE_RESULTS]
    return record


def _key_record(entry: ApiKeyEntry) -> dict:
    record = entry.to_dict()
    record["key"] = encrypt_secret(entry.key)
    return record


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------


class StateStore:
    """Load / mutate / persist lifecycle for the pool, the cursor and the job history.

    Loads are awaited once at startup. Saves are called synchronously from the
    pool and registry change hooks: they snapshot the document right away and
    queue it for a background writer task, so callers on the event loop never
    wait on the database. Queued documents are coalesced per storage key; only
    the latest snapshot of each is written.
    """

    def __init__(self, storage: SqlStateStorage):
        self.storage = storage
        # storage key -> serialized document, None for a delete
        self._pending: dict[str, str | None] = {}
        self._writer: asyncio.Task | None = None

    # -- Load -----------------------------------------------------------------

    async def _read_json(self, storage_key: str) -> Any:
        try:
            raw = await self.storage.read(storage_key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.warning("Could not load %s: %s", storage_key, e)
            return None

    async def load_jobs(self, kind: JobKind) -> list[Job]:
        records = await self._read_json(JOBS_KEYS[kind])
        if not isinstance(records, list):
            return []
        parse = video_job_from_record if kind == JobKind.VIDEO else image_job_from_record
        jobs = [job for job in (parse(r) for r in records) if job is not None]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:MAX_JOBS_PER_KIND]

    async def load_keys(self) -> list[ApiKeyEntry]:
        records = await self._read_json(KEYS_KEY)
        if not isinstance(records, list):
            return []
        entries = [e for e in (key_from_record(r, i) for i, r in enumerate(records)) if e is not None]
        return entries[:MAX_KEYS]

    async def load_cursor(self) -> int:
        value = await self._read_json(ROTATION_KEY)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        return 0

    async def load_pool(self, on_change: Callable[[KeyPool], None] | None = None) -> KeyPool:
        pool = KeyPool(await self.load_keys(), cursor=await self.load_cursor())
        pool.on_change = on_change
        return pool

    async def load_registry(self) -> JobRegistry:
        return JobRegistry(
            video_jobs=await self.load_jobs(JobKind.VIDEO),
            image_jobs=await self.load_jobs(JobKind.IMAGE),
        )

    # -- Persist (best effort, in the background) -----------------------------

    def save_jobs(self, kind: JobKind, jobs: Iterable[Job]) -> None:
        records = [_job_record(job) for job in list(jobs)[:MAX_JOBS_PER_KIND]]
        self._enqueue(JOBS_KEYS[kind], json.dumps(records, ensure_ascii=False))

    def save_keys(self, entries: Iterable[ApiKeyEntry]) -> None:
        records = [_key_record(e) for e in list(entries)[:MAX_KEYS]]
        self._enqueue(KEYS_KEY, json.dumps(records, ensure_ascii=False))

    def save_cursor(self, cursor: int) -> None:
        self._enqueue(ROTATION_KEY, json.dumps(cursor))

    def save_pool(self, pool: KeyPool) -> None:
        self.save_keys(pool.entries)
        self.save_cursor(pool.cursor)

    def clear_jobs(self, kind: JobKind) -> None:
        self._enqueue(JOBS_KEYS[kind], None)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _enqueue(self, storage_key: str, payload: str | None) -> None:
        # Re-inserting moves the key to the back so writes keep mutation order
        self._pending.pop(storage_key, None)
        self._pending[storage_key] = payload
        self._kick()

    def _kick(self) -> None:
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; flush() picks the queue up
            return
        self._writer = loop.create_task(self._drain(), name="state-writer")

    async def _drain(self) -> None:
        while self._pending:
            storage_key = next(iter(self._pending))
            payload = self._pending.pop(storage_key)
            await self._write(storage_key, payload)

    async def _write(self, storage_key: str, payload: str | None) -> bool:
        try:
            if payload is None:
                await self.storage.delete(storage_key)
            else:
                await self.storage.write(storage_key, payload)
            return True
        except Exception as e:
            logger.warning("Could not persist %s: %s", storage_key, e)
            return False

    async def flush(self) -> None:
        """Wait until every queued document has been written (or failed)."""
        while self._pending or (self._writer is not None and not self._writer.done()):
            self._kick()
            if self._writer is not None:
                await self._writer

    async def close(self) -> None:
        await self.flush()
        await self.storage.dispose()

    def bind(self, pool: KeyPool, registry: JobRegistry) -> None:
        """Mirror every pool and registry mutation to storage."""
        pool.on_change = self.save_pool

        def _on_jobs_change(kind: JobKind) -> None:
            jobs = registry.jobs(kind)
            if jobs:
                self.save_jobs(kind, jobs)
            else:
                self.clear_jobs(kind)

        registry.on_change = _on_jobs_change
