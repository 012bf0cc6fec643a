"""In-process job queue with observable completion.

Handoffs between components (a meeting reaching ``processing`` triggering
transcript retrieval, a ready transcript triggering content generation) go
through a JobQueue rather than fire-and-forget tasks. Each submission yields
a Job whose status and error are inspectable, and callers can await it.

Submissions are keyed: while a job for a key is pending or running, a
second submission with the same key returns the existing job.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.notetaker.core.monitoring import jobs_pending, jobs_total

logger = structlog.get_logger(__name__)


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class Job(BaseModel):
    """One unit of queued work and its observable outcome."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    queue: str
    key: str
    payload: Any = None
    status: JobStatus = JobStatus.pending
    error: str | None = None
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def done(self) -> bool:
        return self.status in (JobStatus.succeeded, JobStatus.failed)


class JobQueue:
    """Bounded pool of asyncio workers draining a keyed queue.

    Args:
        name: Queue name used in logs and metrics.
        handler: Coroutine function invoked with each job's payload.
        workers: Number of concurrent worker tasks.
        history_size: Finished jobs retained for inspection.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[Any], Awaitable[Any]],
        workers: int = 1,
        history_size: int = 500,
    ) -> None:
        self._name = name
        self._handler = handler
        self._worker_count = max(1, workers)
        self._history_size = history_size
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._active: dict[str, Job] = {}
        self._jobs: dict[uuid.UUID, Job] = {}
        self._waiters: dict[uuid.UUID, asyncio.Event] = {}
        self._workers: list[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn worker tasks. Calling start twice is a no-op."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self._name}-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("jobs.queue_started", queue=self._name, workers=self._worker_count)

    async def stop(self, drain: bool = True) -> None:
        """Stop workers, optionally letting queued jobs finish first."""
        if drain and self._workers:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("jobs.queue_stopped", queue=self._name)

    async def drain(self) -> None:
        """Wait until every submitted job has finished."""
        await self._queue.join()

    # ── Submission & Inspection ──────────────────────────────────────────

    def submit(self, key: str, payload: Any = None) -> Job:
        """Enqueue work for ``key`` unless a job for it is already in flight."""
        existing = self._active.get(key)
        if existing is not None:
            logger.debug("jobs.duplicate_submission", queue=self._name, key=key)
            return existing

        job = Job(queue=self._name, key=key, payload=payload)
        self._active[key] = job
        self._jobs[job.id] = job
        self._waiters[job.id] = asyncio.Event()
        self._queue.put_nowait(job)
        jobs_pending.labels(queue=self._name).inc()
        logger.info("jobs.submitted", queue=self._name, key=key, job_id=str(job.id))
        return job

    def get(self, job_id: uuid.UUID) -> Job | None:
        return self._jobs.get(job_id)

    def pending_keys(self) -> list[str]:
        return list(self._active)

    async def wait(self, job: Job) -> Job:
        """Block until ``job`` has finished and return it."""
        event = self._waiters.get(job.id)
        if event is not None:
            await event.wait()
        return job

    # ── Internals ────────────────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        job.status = JobStatus.running
        try:
            await self._handler(job.payload)
        except Exception as exc:
            job.status = JobStatus.failed
            job.error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "jobs.failed",
                queue=self._name,
                key=job.key,
                job_id=str(job.id),
                error=job.error,
            )
        else:
            job.status = JobStatus.succeeded
            logger.info("jobs.succeeded", queue=self._name, key=job.key, job_id=str(job.id))
        finally:
            job.finished_at = datetime.now(timezone.utc)
            self._active.pop(job.key, None)
            jobs_pending.labels(queue=self._name).dec()
            jobs_total.labels(queue=self._name, status=job.status.value).inc()
            self._waiters.pop(job.id).set()
            self._trim_history()

    def _trim_history(self) -> None:
        finished = [j for j in self._jobs.values() if j.done]
        overflow = len(finished) - self._history_size
        for job in finished[: max(0, overflow)]:
            self._jobs.pop(job.id, None)
