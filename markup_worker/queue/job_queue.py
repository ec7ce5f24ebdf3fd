"""Debounced job queue for Markup scrape jobs.

Features:
- Debounce by replacement: one pending job per URL, re-submission resets the delay
- Fixed-delay retry with a bounded number of attempts
- Terminal failed state kept for inspection and manual retry
- Retention of finished jobs by age and count
- Management operations (stats, inspect, retry, remove, pause/resume, clean)

Jobs live in a JobStore (Redis in production, in-memory for tests).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

from markup_worker.config import Settings, get_settings

from . import events as ev
from .errors import JobNotFoundError, JobStateError
from .events import QueueEvents
from .models import (
    CleanResult,
    Job,
    JobState,
    JobSummary,
    QueueStats,
    SubmitReceipt,
    job_id_for,
    utcnow,
)
from .policy import RetryPolicy, retention_from_settings
from .redis_store import RedisJobStore
from .store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_CLEAN_GRACE_MS = 24 * 3600 * 1000
DEFAULT_CLEAN_LIMIT = 1000
FAILED_GRACE_FACTOR = 7


class JobQueue:
    """Coordinator between submitters, the store and the worker."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        events: Optional[QueueEvents] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = settings or get_settings()
        if store is None:
            completed, failed = retention_from_settings(self._settings)
            store = RedisJobStore(
                self._settings.redis_url,
                self._settings.queue_name,
                completed_retention=completed,
                failed_retention=failed,
            )
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self._settings)
        self.events = events or QueueEvents()
        self.clock = clock
        self.debounce_delay_ms = self._settings.debounce_delay_ms
        self.stalled_timeout_ms = self._settings.stalled_job_timeout_ms

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def name(self) -> str:
        return self._settings.queue_name

    async def connect(self) -> bool:
        return await self.store.connect()

    async def close(self) -> None:
        await self.store.disconnect()

    # ==================== Submission ====================

    async def submit(
        self,
        resource_key: str,
        payload: dict,
        delay_ms: Optional[int] = None,
    ) -> SubmitReceipt:
        """
        Schedule a job for `resource_key`, replacing any pending one.

        Args:
            resource_key: Dedup key (the Markup URL)
            payload: Data forwarded to the handler
            delay_ms: Debounce delay (defaults to the configured one)

        Returns:
            Receipt with the job id and the earliest run time

        Raises:
            ValueError: If the key is empty or the delay negative
            StoreUnavailableError: If the store cannot be reached
        """
        if not resource_key:
            raise ValueError("resource_key must be a non-empty string")
        delay = self.debounce_delay_ms if delay_ms is None else delay_ms
        if delay < 0:
            raise ValueError("delay_ms must not be negative")

        job_id = job_id_for(resource_key)

        existing = await self.store.get(job_id)
        if existing and not existing.state.is_terminal:
            logger.info(
                f"Job for URL already exists: {job_id} ({existing.state.value}), "
                f"replacing it with a new {delay}ms delay",
                extra={"job_id": job_id, "url": resource_key},
            )
            # An active job's handler keeps running; only its bookkeeping goes
            await self.store.remove(job_id)
            await self.events.emit(ev.REMOVED, existing)

        now = self.clock()
        job = Job(
            id=job_id,
            resource_key=resource_key,
            payload=payload,
            max_attempts=self.retry_policy.max_attempts,
            run_at=now + timedelta(milliseconds=delay),
            created_at=now,
        )
        await self.store.insert(job)

        logger.info(
            f"Job added to queue: {job_id}, will start at {job.run_at.isoformat()}",
            extra={"job_id": job_id, "url": resource_key, "queue": self.name},
        )
        return SubmitReceipt(
            job_id=job_id,
            url=resource_key,
            delay_ms=delay,
            will_run_at=job.run_at,
        )

    # ==================== Worker side ====================

    async def claim(self) -> Optional[Job]:
        """Claim the earliest ready job, if any."""
        job = await self.store.claim_next(self.clock())
        if job:
            logger.info(
                f"Claimed job {job.id} (attempt {job.attempts_made}/{job.max_attempts})",
                extra={"job_id": job.id, "attempts": job.attempts_made},
            )
        return job

    async def report_progress(self, job: Job, progress: int) -> bool:
        job.progress = max(0, min(100, int(progress)))
        written = await self.store.update(job, self.clock())
        if written:
            await self.events.emit(ev.PROGRESS, job, job.progress)
        return written

    async def complete(self, job: Job, result: Any = None) -> bool:
        """Mark a job as completed. Returns False if its record was removed or replaced."""
        now = self.clock()
        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = now

        if not await self.store.update(job, now):
            logger.info(f"Job {job.id} finished after being removed or replaced, result dropped")
            return False

        logger.info(f"Job {job.id} completed successfully", extra={"job_id": job.id})
        await self.events.emit(ev.COMPLETED, job, result)
        return True

    async def fail(self, job: Job, error: str) -> bool:
        """
        Record a failed attempt.

        While attempts remain the job is re-delayed by the fixed retry delay,
        otherwise it becomes terminally failed. Returns False if the record
        was removed or replaced while the handler ran.
        """
        now = self.clock()
        job.error_history.append(f"[{now.isoformat()}] {error}")

        if self.retry_policy.should_retry(job.attempts_made, job.max_attempts):
            delay = self.retry_policy.get_delay(job.attempts_made)
            job.state = JobState.DELAYED
            job.run_at = self.retry_policy.next_run_at(now, job.attempts_made)
        else:
            job.state = JobState.FAILED
            job.failure_reason = error
            job.finished_at = now

        if not await self.store.update(job, now):
            logger.info(f"Job {job.id} failed after being removed or replaced, outcome dropped")
            return False

        if job.state == JobState.DELAYED:
            logger.warning(
                f"Job {job.id} failed, retry {job.attempts_made}/{job.max_attempts} in {delay:.0f}s: {error}",
                extra={"job_id": job.id, "attempts": job.attempts_made},
            )
        else:
            logger.error(
                f"Job {job.id} failed permanently after {job.attempts_made} attempts: {error}",
                extra={"job_id": job.id, "attempts": job.attempts_made},
            )
        await self.events.emit(ev.FAILED, job, error)
        return True

    async def release(self, job: Job) -> bool:
        """Put an interrupted active job back in the queue without counting the attempt."""
        now = self.clock()
        job.state = JobState.DELAYED
        job.run_at = now
        job.attempts_made = max(job.attempts_made - 1, 0)
        job.progress = 0
        job.processed_at = None

        if not await self.store.update(job, now):
            logger.info(f"Interrupted job {job.id} was removed or replaced, nothing to release")
            return False

        logger.warning(
            f"Job {job.id} was interrupted and returned to the queue",
            extra={"job_id": job.id, "attempts": job.attempts_made},
        )
        return True

    async def recover_stalled(self) -> list[str]:
        """
        Record a failed attempt for active jobs claimed longer ago than the stalled timeout.

        Covers workers that died mid-job. The retry policy decides whether the
        job is re-delayed or ends up failed.

        Returns:
            Ids of the recovered jobs
        """
        now = self.clock()
        cutoff = now - timedelta(milliseconds=self.stalled_timeout_ms)
        recovered = []
        for job in await self.store.list_jobs(JobState.ACTIVE, 0, -1, now):
            if job.processed_at and job.processed_at > cutoff:
                continue
            reason = f"Job stalled: no outcome {self.stalled_timeout_ms // 1000}s after it was claimed"
            if await self.fail(job, reason):
                recovered.append(job.id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled jobs: {', '.join(recovered)}")
        return recovered

    # ==================== Management ====================

    async def stats(self) -> QueueStats:
        return await self.store.counts(self.clock())

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = await self.store.get(job_id)
        return job.view(self.clock()) if job else None

    async def list_jobs(
        self,
        state: Union[JobState, str] = JobState.WAITING,
        start: int = 0,
        end: int = 10,
    ) -> list[JobSummary]:
        """Job summaries in `state`, inclusive range (end=-1 for all)."""
        state = JobState(state)
        now = self.clock()
        jobs = await self.store.list_jobs(state, start, end, now)
        return [job.summary(now) for job in jobs]

    async def retry_now(self, job_id: str) -> Job:
        """
        Make a job eligible immediately, keeping its attempt count.

        A job whose attempts are exhausted gets exactly one more attempt.
        Active jobs are refused rather than retried regardless of state: their
        handler is still running and would race the retried attempt.

        Raises:
            JobNotFoundError: If no such job exists
            JobStateError: If the job is currently active
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.state == JobState.ACTIVE:
            raise JobStateError(job_id, job.state.value, f"Job {job_id} is active and cannot be retried")

        now = self.clock()
        job.state = JobState.DELAYED
        job.run_at = now
        job.failure_reason = None
        job.finished_at = None
        job.max_attempts = max(job.max_attempts, job.attempts_made + 1)

        if not await self.store.update(job, now):
            raise JobNotFoundError(job_id)

        logger.info(f"Job {job_id} has been queued for retry", extra={"job_id": job_id})
        return job.view(now)

    async def remove(self, job_id: str) -> bool:
        """Delete a job in any state. An active handler is not interrupted."""
        removed = await self.store.remove(job_id)
        if removed is None:
            return False
        if removed.state == JobState.ACTIVE:
            logger.info(f"Removed active job {job_id}; its running handler will not be interrupted")
        else:
            logger.info(f"Job {job_id} has been removed from queue")
        await self.events.emit(ev.REMOVED, removed)
        return True

    async def pause(self) -> None:
        await self.store.set_paused(True)
        logger.info("Queue paused")

    async def resume(self) -> None:
        await self.store.set_paused(False)
        logger.info("Queue resumed")

    async def is_paused(self) -> bool:
        return await self.store.is_paused()

    async def clean(
        self,
        grace_ms: int = DEFAULT_CLEAN_GRACE_MS,
        limit: int = DEFAULT_CLEAN_LIMIT,
    ) -> CleanResult:
        """Delete completed jobs older than `grace_ms` and failed jobs older than 7x that."""
        if grace_ms < 0:
            raise ValueError("grace_ms must not be negative")
        now = self.clock()
        completed = await self.store.clean(
            JobState.COMPLETED, now - timedelta(milliseconds=grace_ms), limit
        )
        failed = await self.store.clean(
            JobState.FAILED, now - timedelta(milliseconds=grace_ms * FAILED_GRACE_FACTOR), limit
        )
        logger.info(f"Cleaned {len(completed)} completed jobs and {len(failed)} failed jobs")
        return CleanResult(cleaned_completed=len(completed), cleaned_failed=len(failed))


# Global queue instance
job_queue = JobQueue()


async def get_queue() -> JobQueue:
    """Get the job queue instance (for dependency injection).

    Does not raise if Redis is unavailable; store calls raise
    StoreUnavailableError instead.
    """
    await job_queue.connect()
    return job_queue
