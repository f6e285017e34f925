"""In-process background job queue and daily scheduler.

JobQueue runs named handlers on a pool of asyncio worker tasks, off the
request path. A handler that raises is retried with exponential backoff
`min(base * 2**(attempt-1), max)` until `max_attempts` is reached; the job is
then marked failed and kept for the operational jobs endpoint. Retries never
touch already persisted scan or violation state; that is up to the handler.

DailyScheduler enqueues one job per day at a fixed UTC time.
"""

import asyncio
import enum
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from typing import Any

from fleet_compliance.observability import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]

# Finished jobs kept for inspection
_MAX_RETAINED_JOBS = 500


class JobStatus(str, enum.Enum):
    ENQUEUED = "enqueued"
    RUNNING = "running"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.FAILED}


@dataclass
class Job:
    """One unit of work and its execution history."""

    topic: str
    payload: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.ENQUEUED
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before retrying after the `attempt`-th failure (1-based)."""
    return min(base_seconds * 2 ** (attempt - 1), max_seconds)


class JobQueue:
    """Asyncio job queue with bounded retries.

    Args:
        worker_count: Number of concurrent worker tasks.
        max_attempts: Attempts per job before it is marked failed.
        backoff_base_seconds: Delay after the first failure.
        backoff_max_seconds: Upper bound for the delay.
    """

    def __init__(
        self,
        worker_count: int = 2,
        max_attempts: int = 5,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 600.0,
    ) -> None:
        self._worker_count = max(1, worker_count)
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, Job] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def register(self, topic: str, handler: JobHandler) -> None:
        """Bind a handler to a topic. One handler per topic."""
        if topic in self._handlers:
            raise ValueError(f"A handler for topic '{topic}' is already registered")
        self._handlers[topic] = handler

    def enqueue(self, topic: str, payload: dict[str, Any]) -> str:
        """Queue a job and return its id.

        Raises:
            ValueError: If no handler is registered for `topic`.
        """
        if topic not in self._handlers:
            raise ValueError(f"No handler registered for topic '{topic}'")
        job = Job(topic=topic, payload=dict(payload))
        self._jobs[job.id] = job
        self._outstanding += 1
        self._idle.clear()
        self._queue.put_nowait(job)
        logger.info("Job enqueued", job_id=job.id, topic=topic)
        self._prune()
        return job.id

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Known jobs, newest first."""
        jobs = [job for job in self._jobs.values() if status is None or job.status == status]
        return sorted(jobs, key=lambda job: job.enqueued_at, reverse=True)

    def start(self) -> None:
        """Spawn the worker tasks. Idempotent."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"job-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("Job queue started", workers=self._worker_count, max_attempts=self._max_attempts)

    async def stop(self) -> None:
        """Cancel workers and pending retries. Queued jobs are abandoned."""
        tasks = [*self._workers, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()
        logger.info("Job queue stopped")

    async def drain(self) -> None:
        """Wait until every enqueued job has succeeded or failed for good."""
        await self._idle.wait()

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run(job)
            finally:
                self._queue.task_done()

    async def _run(self, job: Job) -> None:
        handler = self._handlers[job.topic]
        job.status = JobStatus.RUNNING
        job.attempts += 1
        try:
            await handler(job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            if job.attempts >= self._max_attempts:
                logger.error(
                    "Job failed permanently",
                    job_id=job.id,
                    topic=job.topic,
                    attempts=job.attempts,
                    error=job.last_error,
                )
                self._finish(job, JobStatus.FAILED)
                return

            delay = backoff_delay(job.attempts, self._backoff_base_seconds, self._backoff_max_seconds)
            logger.warning(
                "Job failed, retry scheduled",
                job_id=job.id,
                topic=job.topic,
                attempts=job.attempts,
                retry_in_seconds=delay,
                error=job.last_error,
            )
            job.status = JobStatus.RETRY_SCHEDULED
            task = asyncio.create_task(self._requeue_later(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        logger.info("Job succeeded", job_id=job.id, topic=job.topic, attempts=job.attempts)
        self._finish(job, JobStatus.SUCCEEDED)

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        job.status = JobStatus.ENQUEUED
        self._queue.put_nowait(job)

    def _finish(self, job: Job, status: JobStatus) -> None:
        job.status = status
        job.finished_at = datetime.now(UTC)
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle.set()

    def _prune(self) -> None:
        finished = [job for job in self._jobs.values() if job.status in _TERMINAL_STATUSES]
        excess = len(self._jobs) - _MAX_RETAINED_JOBS
        if excess <= 0:
            return
        finished.sort(key=lambda job: job.finished_at or job.enqueued_at)
        for job in finished[:excess]:
            del self._jobs[job.id]


def parse_daily_time(value: str) -> time:
    """Parse `HH:MM` into a UTC time of day.

    Raises:
        ValueError: If the value is not a valid 24-hour time.
    """
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0), tzinfo=UTC)


def next_run_after(now: datetime, at: time) -> datetime:
    """First occurrence of `at` strictly after `now`."""
    candidate = datetime.combine(now.date(), at.replace(tzinfo=None), tzinfo=UTC)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailyScheduler:
    """Enqueues a job every day at a fixed UTC time.

    Args:
        queue: Target job queue.
        topic: Topic to enqueue.
        at: Time of day (UTC).
        clock: Returns the current UTC time. Injected in tests.
    """

    def __init__(
        self,
        queue: JobQueue,
        topic: str,
        at: time,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._queue = queue
        self._topic = topic
        self._at = at
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"daily-{self._topic}")
            logger.info(
                "Daily scheduler started",
                topic=self._topic,
                next_run=next_run_after(self._clock(), self._at).isoformat(),
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self) -> None:
        while True:
            now = self._clock()
            wait_seconds = (next_run_after(now, self._at) - now).total_seconds()
            await asyncio.sleep(wait_seconds)
            self._queue.enqueue(self._topic, {"trigger": "schedule"})
