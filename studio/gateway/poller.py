"""Polling Engine — drives one deferred job to a terminal state.

State machine:
  processing → ready       result URL found
  processing → error       non-2xx, failure token, or success token without URL
  processing ⇄ stopped     manual pause / resume

Loop for the single active job, while it is ``processing``:
  1. Query status with the credential recorded on the job
  2. 202 → still working: stamp last_polled_at, wait, repeat
  3. Classify the payload (see ``classify_status``)
  4. Not settled → record last state / payload, wait, repeat

The loop suspends only at the status query and the delay. Cancellation is
cooperative: a CancellationToken is checked after every suspension point and
a response that arrives after cancellation is dropped without mutation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import Counter

from studio.core.config import settings
from studio.core.exceptions import InputValidationError, NoUsableCredentialError, TransportError
from studio.gateway.key_pool import KeyPool
from studio.gateway.normalizer import (
    describe_upstream_error,
    extract_error_message,
    extract_state,
    extract_video_url,
    is_failure_state,
    is_success_state,
)
from studio.gateway.types import JobKind, JobStatus, UpstreamResult, VideoJob, utcnow
from studio.store.registry import JobRegistry

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = "Missing API key for this job. Re-add it to the key pool."

POLL_RESULTS = Counter(
    "job_poll_results_total",
    "Status poll outcomes",
    ["outcome"],
)

StatusQueryFn = Callable[[str, str | None], Awaitable[UpstreamResult]]


class CancellationToken:
    """Liveness flag closed over by one loop instance."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True)
class StatusVerdict:
    """Outcome of classifying one status response."""

    status: JobStatus
    changes: dict[str, Any] = field(default_factory=dict)

    @property
    def settled(self) -> bool:
        return self.status.is_terminal


def classify_status(result: UpstreamResult) -> StatusVerdict:
    """Turn one status response into the job transition it implies.

    Order matters: a failure token beats everything, a URL beats a
    success token, and a success token without a URL is an error.
    """
    polled_at = utcnow()
    if result.still_working:
        return StatusVerdict(JobStatus.PROCESSING, {"last_polled_at": polled_at})

    data = result.data
    state = extract_state(data)
    changes: dict[str, Any] = {"raw": data, "last_polled_at": polled_at}
    if state:
        changes["last_state"] = state

    if not result.ok:
        changes["error"] = describe_upstream_error(data, result.status)
        return StatusVerdict(JobStatus.ERROR, changes)

    if is_failure_state(state):
        changes["error"] = extract_error_message(data) or f"Request {state}"
        return StatusVerdict(JobStatus.ERROR, changes)

    url = extract_video_url(data)
    if url:
        changes["video_url"] = url
        return StatusVerdict(JobStatus.READY, changes)

    if is_success_state(state):
        changes["error"] = extract_error_message(data) or f"Request {state}, but no URL returned"
        return StatusVerdict(JobStatus.ERROR, changes)

    return StatusVerdict(JobStatus.PROCESSING, changes)


@dataclass
class _LoopHandle:
    request_id: str
    token: CancellationToken
    task: asyncio.Task


class PollingEngine:
    """Owns the active-job designation and at most one live poll loop.

    Usage:
        engine = PollingEngine(registry, pool, client.query_status)
        task = engine.activate(request_id)   # tears down any previous loop
        engine.stop(request_id)              # processing → stopped
        engine.resume(request_id)            # stopped → processing, fresh loop
    """

    def __init__(
        self,
        registry: JobRegistry,
        pool: KeyPool,
        query_status: StatusQueryFn,
        interval: float | None = None,
        allow_anonymous: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.pool = pool
        self.query_status = query_status
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.allow_anonymous = allow_anonymous
        self._sleep = sleep
        self._active_id: str | None = None
        self._loop: _LoopHandle | None = None
        # Every loop task not yet finished, including torn-down ones still unwinding
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_job_id(self) -> str | None:
        return self._active_id

    @property
    def task(self) -> asyncio.Task | None:
        """The live loop's task, if any."""
        return self._loop.task if self._loop else None

    def is_polling(self, request_id: str) -> bool:
        return (
            self._loop is not None
            and self._loop.request_id == request_id
            and not self._loop.token.cancelled
            and not self._loop.task.done()
        )

    # -- Control --------------------------------------------------------------

    def activate(self, request_id: str) -> asyncio.Task | None:
        """Designate the active job and poll it if it is processing."""
        job = self.registry.require(JobKind.VIDEO, request_id)
        self._teardown()
        self._active_id = request_id
        if job.status != JobStatus.PROCESSING:
            return None
        return self._start(request_id)

    def stop(self, request_id: str) -> VideoJob:
        job = self.registry.require(JobKind.VIDEO, request_id)
        if job.status != JobStatus.PROCESSING:
            raise InputValidationError(f"Job {request_id} is not processing (status={job.status.value})")
        if self._loop and self._loop.request_id == request_id:
            self._teardown()
        logger.info("Polling stopped for job %s", request_id)
        return self.registry.update(JobKind.VIDEO, request_id, status=JobStatus.STOPPED)

    def resume(self, request_id: str) -> VideoJob:
        job = self.registry.require(JobKind.VIDEO, request_id)
        if job.status != JobStatus.STOPPED:
            raise InputValidationError(f"Job {request_id} is not stopped (status={job.status.value})")
        updated = self.registry.update(JobKind.VIDEO, request_id, status=JobStatus.PROCESSING)
        self.activate(request_id)
        logger.info("Polling resumed for job %s", request_id)
        return updated

    def deactivate(self) -> None:
        self._teardown()
        self._active_id = None

    async def shutdown(self) -> None:
        """Cancel every loop task, including any in-flight query or delay."""
        self.deactivate()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start(self, request_id: str) -> asyncio.Task:
        token = CancellationToken()
        task = asyncio.create_task(self._run(request_id, token), name=f"poll:{request_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._loop = _LoopHandle(request_id=request_id, token=token, task=task)
        return task

    def _teardown(self) -> None:
        if self._loop is not None:
            self._loop.token.cancel()
            self._loop = None

    # -- Loop -----------------------------------------------------------------

    def _credential_for(self, job: VideoJob) -> tuple[bool, str | None]:
        """(usable, credential) for the key recorded on the job."""
        if job.key_id is None:
            return self.allow_anonymous, None
        entry = self.pool.get(job.key_id)
        if entry is None or not entry.key.strip():
            return False, None
        return True, entry.key

    def _is_live(self, request_id: str, token: CancellationToken) -> bool:
        if token.cancelled:
            return False
        job = self.registry.get(JobKind.VIDEO, request_id)
        return job is not None and job.status == JobStatus.PROCESSING

    def _apply(self, request_id: str, verdict: StatusVerdict) -> VideoJob | None:
        changes = dict(verdict.changes)
        if verdict.status != JobStatus.PROCESSING:
            changes["status"] = verdict.status
        job = self.registry.update(JobKind.VIDEO, request_id, **changes)

        if verdict.status == JobStatus.READY:
            POLL_RESULTS.labels(outcome="ready").inc()
            logger.info("Job %s ready: %s", request_id, changes.get("video_url"), extra={"request_id": request_id})
        elif verdict.status == JobStatus.ERROR:
            POLL_RESULTS.labels(outcome="error").inc()
            logger.warning("Job %s failed: %s", request_id, changes.get("error"), extra={"request_id": request_id})
        else:
            POLL_RESULTS.labels(outcome="pending").inc()
        return job

    def _fail(self, request_id: str, message: str) -> None:
        self._apply(request_id, StatusVerdict(JobStatus.ERROR, {"error": message}))

    async def _run(self, request_id: str, token: CancellationToken) -> None:
        try:
            await self._poll(request_id, token)
        except Exception as e:
            logger.exception("Poll loop for job %s crashed", request_id)
            if self._is_live(request_id, token):
                self._fail(request_id, f"{type(e).__name__}: {e}")

    async def _poll(self, request_id: str, token: CancellationToken) -> None:
        while self._is_live(request_id, token):
            job = self.registry.get(JobKind.VIDEO, request_id)
            usable, credential = self._credential_for(job)
            if not usable:
                self._fail(request_id, MISSING_KEY_MESSAGE)
                return

            try:
                result = await self.query_status(request_id, credential)
            except TransportError as e:
                if self._is_live(request_id, token):
                    self._fail(request_id, e.message)
                return

            if not self._is_live(request_id, token):
                logger.debug("Discarding stale status response for job %s", request_id)
                return

            verdict = classify_status(result)
            self._apply(request_id, verdict)
            if verdict.settled:
                return

            await self._sleep(self.interval)

    async def refresh_once(self, request_id: str) -> VideoJob:
        """One manual status query, classified like a loop iteration."""
        job = self.registry.require(JobKind.VIDEO, request_id)
        if job.status.is_terminal:
            raise InputValidationError(f"Job {request_id} already finished (status={job.status.value})")
        usable, credential = self._credential_for(job)
        if not usable:
            raise NoUsableCredentialError(MISSING_KEY_MESSAGE)

        result = await self.query_status(request_id, credential)

        current = self.registry.get(JobKind.VIDEO, request_id)
        if current is None or current.status.is_terminal:
            # Settled (or cleared) by the loop while we were waiting
            return current
        return self._apply(request_id, classify_status(result))
