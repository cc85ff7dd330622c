"""Job Registry — the single owner of every Job record.

Jobs are immutable dataclasses; every mutation swaps the per-kind tuple for a
new one built from the previous value, so no reader ever observes a partial
write. Other components hold job ids, never job objects, across suspension
points.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace

from studio.core.exceptions import NotFoundError
from studio.gateway.types import MAX_JOBS_PER_KIND, ImageJob, Job, JobKind, VideoJob

logger = logging.getLogger(__name__)


class JobRegistry:
    """In-memory job history, capped per kind, most recent first."""

    def __init__(
        self,
        video_jobs: Iterable[VideoJob] = (),
        image_jobs: Iterable[ImageJob] = (),
        limit: int = MAX_JOBS_PER_KIND,
        on_change: Callable[[JobKind], None] | None = None,
    ):
        self.limit = limit
        self._jobs: dict[JobKind, tuple[Job, ...]] = {
            JobKind.VIDEO: tuple(video_jobs)[:limit],
            JobKind.IMAGE: tuple(image_jobs)[:limit],
        }
        self.on_change = on_change

    def jobs(self, kind: JobKind) -> tuple[Job, ...]:
        return self._jobs[kind]

    @property
    def video_jobs(self) -> tuple[VideoJob, ...]:
        return self._jobs[JobKind.VIDEO]

    @property
    def image_jobs(self) -> tuple[ImageJob, ...]:
        return self._jobs[JobKind.IMAGE]

    def get(self, kind: JobKind, job_id: str) -> Job | None:
        for job in self._jobs[kind]:
            if job.id == job_id:
                return job
        return None

    def require(self, kind: JobKind, job_id: str) -> Job:
        job = self.get(kind, job_id)
        if job is None:
            raise NotFoundError(f"{kind.value.capitalize()} job {job_id} not found")
        return job

    def _replace(self, kind: JobKind, jobs: Iterable[Job]) -> None:
        self._jobs[kind] = tuple(jobs)[: self.limit]
        if self.on_change:
            self.on_change(kind)

    def add(self, job: Job) -> Job:
        """Insert at the front; an existing job with the same id is superseded."""
        rest = (j for j in self._jobs[job.kind] if j.id != job.id)
        self._replace(job.kind, (job, *rest))
        return job

    def update(self, kind: JobKind, job_id: str, **changes) -> Job | None:
        """Apply field changes to one job. Returns the new record, or None if it is gone."""
        current = self.get(kind, job_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        self._replace(kind, (updated if j.id == job_id else j for j in self._jobs[kind]))
        return updated

    def clear(self, kind: JobKind) -> int:
        count = len(self._jobs[kind])
        self._replace(kind, ())
        logger.info("Cleared %d %s job(s) from history", count, kind.value)
        return count
