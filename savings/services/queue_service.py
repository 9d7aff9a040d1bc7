"""
Async dispatcher — a best-effort, in-process job queue for side effects.

Request handlers enqueue notification and e-mail jobs here instead of doing
the work inline, so a slow mail relay never delays a deposit.

Behaviour:
  - enqueue(type, payload, delay) stores a job and starts a drain pass if
    none is running.
  - A drain pass runs every due job (process_at <= now) through the handler
    registered for its type.
  - A failing job is retried with exponential backoff (2^attempts seconds)
    until max_attempts is reached, then dropped and logged.
  - Jobs with no registered handler are dropped and logged.
  - After a pass, a wake-up is scheduled for the earliest deferred job, so
    retries run without waiting for another enqueue.

Durability:
  There is none. Jobs live in a JobStore; the only implementation is
  MemoryJobStore, so jobs are lost if the process dies. A persistent store
  can be added by implementing JobStore; JobQueue does not change.

The queue is an ordinary object created by the application lifespan and
injected wherever it is needed; there is no module-level instance.

Request handlers don't enqueue into the JobQueue directly. They get a
SessionJobBuffer bound to the request's database session, which holds jobs
until that session commits and discards them on rollback, so no e-mail is
sent about a change that was never stored. Services accept either through
the JobSink interface.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from savings.clock import utcnow
from savings.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[dict], Awaitable[object]]


@dataclass
class QueueJob:
    type: str
    payload: dict
    process_at: datetime
    max_attempts: int
    attempts: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=utcnow)


class JobSink(ABC):
    """Anything services can hand a job to."""

    @abstractmethod
    def enqueue(self, job_type: str, payload: dict, delay: float = 0) -> str | None: ...


class JobStore(ABC):
    """Storage backend for queued jobs."""

    @abstractmethod
    def add(self, job: QueueJob) -> None: ...

    @abstractmethod
    def remove(self, job_id: str) -> None: ...

    @abstractmethod
    def next_due(self, now: datetime) -> QueueJob | None:
        """The oldest job whose process_at has passed, if any."""

    @abstractmethod
    def next_process_at(self) -> datetime | None:
        """Earliest process_at among stored jobs."""

    @abstractmethod
    def __len__(self) -> int: ...


class MemoryJobStore(JobStore):
    def __init__(self):
        self._jobs: dict[str, QueueJob] = {}

    def add(self, job: QueueJob) -> None:
        self._jobs[job.id] = job

    def remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def next_due(self, now: datetime) -> QueueJob | None:
        due = [job for job in self._jobs.values() if job.process_at <= now]
        if not due:
            return None
        return min(due, key=lambda job: (job.process_at, job.created_at))

    def next_process_at(self) -> datetime | None:
        if not self._jobs:
            return None
        return min(job.process_at for job in self._jobs.values())

    def get(self, job_id: str) -> QueueJob | None:
        return self._jobs.get(job_id)

    def __len__(self) -> int:
        return len(self._jobs)


class JobQueue(JobSink):
    """
    Dispatcher for background jobs.

    Args:
        store: Where jobs are kept between passes (MemoryJobStore by default).
        max_attempts: Attempts before a failing job is dropped.
        clock: Returns the current aware datetime; tests replace it to
               step over backoff delays.
        autostart: When False, enqueue never schedules a pass by itself
                   and jobs only run on an explicit drain().
    """

    def __init__(
        self,
        store: JobStore | None = None,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
        autostart: bool = True,
    ):
        self.store = store if store is not None else MemoryJobStore()
        self.max_attempts = max_attempts
        self._clock = clock
        self.autostart = autostart
        self._handlers: dict[str, JobHandler] = {}
        self._lock = asyncio.Lock()
        self._drain_task: asyncio.Task | None = None
        self._wakeup: asyncio.TimerHandle | None = None
        self._closed = False

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def enqueue(self, job_type: str, payload: dict, delay: float = 0) -> str:
        """
        Add a job and kick off a drain pass.

        Args:
            job_type: Key of the registered handler.
            payload: JSON-like dict passed to the handler.
            delay: Seconds to wait before the job becomes due.

        Returns:
            The job id.
        """
        job = QueueJob(
            type=job_type,
            payload=payload,
            process_at=self._clock() + timedelta(seconds=delay),
            max_attempts=self.max_attempts,
        )
        self.store.add(job)
        logger.debug("job_enqueued", job_id=job.id, job_type=job_type, delay=delay)
        self._trigger()
        return job.id

    def __len__(self) -> int:
        return len(self.store)

    def _trigger(self) -> None:
        if self._closed or not self.autostart:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet (e.g. enqueued during import); the next drain picks it up
            return
        self._drain_task = loop.create_task(self.drain())

    def _schedule_wakeup(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        next_at = self.store.next_process_at()
        if next_at is None or self._closed or not self.autostart:
            return
        delay = max(0.0, (next_at - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_later(delay, self._trigger)

    async def drain(self) -> int:
        """
        Run every job that is currently due.

        Returns:
            Number of jobs that completed successfully in this pass.
        """
        processed = 0
        async with self._lock:
            while True:
                job = self.store.next_due(self._clock())
                if job is None:
                    break
                if await self._run(job):
                    processed += 1
            self._schedule_wakeup()
        return processed

    async def _run(self, job: QueueJob) -> bool:
        handler = self._handlers.get(job.type)
        if handler is None:
            self.store.remove(job.id)
            logger.warning("job_dropped_no_handler", job_id=job.id, job_type=job.type)
            return False

        try:
            await handler(job.payload)
        except Exception as exc:
            job.attempts += 1
            if job.attempts >= job.max_attempts:
                self.store.remove(job.id)
                logger.error(
                    "job_dropped",
                    job_id=job.id,
                    job_type=job.type,
                    attempts=job.attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                job.process_at = self._clock() + timedelta(seconds=2 ** job.attempts)
                logger.warning(
                    "job_retry_scheduled",
                    job_id=job.id,
                    job_type=job.type,
                    attempts=job.attempts,
                    error_type=type(exc).__name__,
                )
            return False

        self.store.remove(job.id)
        return True

    async def close(self) -> None:
        """Run whatever is due, then stop scheduling further passes."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task
        await self.drain()
        self._closed = True
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
        if len(self.store):
            logger.warning("queue_closed_with_pending_jobs", pending=len(self.store))


class SessionJobBuffer(JobSink):
    """
    Holds jobs until the database session they were produced in commits.

    Args:
        queue: Where jobs go once the session commits.
        session: The request's session. Hooks are registered on its
                 underlying sync Session.
    """

    def __init__(self, queue: JobQueue, session: AsyncSession):
        self.queue = queue
        self._jobs: list[tuple[str, dict, float]] = []
        event.listen(session.sync_session, "after_commit", self._release)
        event.listen(session.sync_session, "after_rollback", self._discard)

    def enqueue(self, job_type: str, payload: dict, delay: float = 0) -> None:
        self._jobs.append((job_type, payload, delay))

    def __len__(self) -> int:
        return len(self._jobs)

    def _release(self, session) -> None:
        jobs, self._jobs = self._jobs, []
        for job_type, payload, delay in jobs:
            self.queue.enqueue(job_type, payload, delay)

    def _discard(self, session) -> None:
        if self._jobs:
            logger.info("jobs_discarded_on_rollback", count=len(self._jobs))
        self._jobs.clear()
