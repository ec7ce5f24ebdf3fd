"""Job store interface and the in-memory backend.

The coordinator only needs a narrow set of primitives from its store:
insert, remove, atomic claim of the earliest ready job, guarded update,
per-state counts and listings, and terminal-job cleanup. Every method takes
the current time from the caller so the store never reads a clock itself.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from .models import Job, JobState, QueueStats, TERMINAL_STATES
from .policy import (
    RetentionPolicy,
    DEFAULT_COMPLETED_RETENTION,
    DEFAULT_FAILED_RETENTION,
)


class JobStore(ABC):
    """Persistent backing for the job queue."""

    def __init__(
        self,
        completed_retention: RetentionPolicy = DEFAULT_COMPLETED_RETENTION,
        failed_retention: RetentionPolicy = DEFAULT_FAILED_RETENTION,
    ):
        self.retention = {
            JobState.COMPLETED: completed_retention,
            JobState.FAILED: failed_retention,
        }

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> None:
        return None

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        """Stored record (state as stored, never WAITING)."""

    @abstractmethod
    async def insert(self, job: Job) -> None:
        """Store a DELAYED job, replacing any record with the same id."""

    @abstractmethod
    async def remove(self, job_id: str) -> Optional[Job]:
        """Delete a record regardless of state. Returns what was removed."""

    @abstractmethod
    async def claim_next(self, now: datetime) -> Optional[Job]:
        """Atomically move the earliest ready job to ACTIVE.

        Increments attempts_made and sets processed_at. Two callers can never
        claim the same job.
        """

    @abstractmethod
    async def update(self, job: Job, now: datetime) -> bool:
        """Write `job` if the stored record still carries `job.token`.

        Re-indexes the job under its new state and applies the retention
        policy when the state is terminal. Returns False, writing nothing,
        when the record was removed or replaced in the meantime.
        """

    @abstractmethod
    async def counts(self, now: datetime) -> QueueStats:
        """Per-state counts (DELAYED split into WAITING by run_at)."""

    @abstractmethod
    async def list_jobs(self, state: JobState, start: int, end: int, now: datetime) -> list[Job]:
        """Jobs in `state`, inclusive index range."""

    @abstractmethod
    async def clean(self, state: JobState, older_than: datetime, limit: int) -> list[str]:
        """Delete terminal jobs finished before `older_than`. Returns removed ids."""

    @abstractmethod
    async def set_paused(self, paused: bool) -> None:
        pass

    @abstractmethod
    async def is_paused(self) -> bool:
        pass

    @staticmethod
    def _check_terminal(state: JobState) -> None:
        if state not in TERMINAL_STATES:
            raise ValueError(f"Only terminal jobs can be cleaned, got {state.value}")


class MemoryJobStore(JobStore):
    """In-process store guarded by an asyncio lock. Used by tests and local runs."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: dict[str, Job] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._paused = False
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def insert(self, job: Job) -> None:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._order[job.id] = next(self._seq)

    async def remove(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            self._order.pop(job_id, None)
            return self._jobs.pop(job_id, None)

    async def claim_next(self, now: datetime) -> Optional[Job]:
        async with self._lock:
            ready = [
                job for job in self._jobs.values()
                if job.state == JobState.DELAYED and job.run_at <= now
            ]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.run_at, self._order[j.id]))
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.processed_at = now
            return job.model_copy(deep=True)

    async def update(self, job: Job, now: datetime) -> bool:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None or stored.token != job.token:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            if job.state.is_terminal:
                self._apply_retention(job.state, now)
            return True

    def _apply_retention(self, state: JobState, now: datetime) -> None:
        policy = self.retention[state]
        cutoff = policy.cutoff(now)
        finished = sorted(
            (j for j in self._jobs.values() if j.state == state),
            key=lambda j: j.finished_at or now,
            reverse=True,
        )
        for index, job in enumerate(finished):
            if index >= policy.max_count or (job.finished_at and job.finished_at < cutoff):
                del self._jobs[job.id]
                self._order.pop(job.id, None)

    async def counts(self, now: datetime) -> QueueStats:
        async with self._lock:
            stats = QueueStats()
            for job in self._jobs.values():
                state = job.state_at(now)
                setattr(stats, state.value, getattr(stats, state.value) + 1)
            stats.total = len(self._jobs)
            return stats

    async def list_jobs(self, state: JobState, start: int, end: int, now: datetime) -> list[Job]:
        async with self._lock:
            matching = [j for j in self._jobs.values() if j.state_at(now) == state]
            if state.is_terminal:
                matching.sort(key=lambda j: j.finished_at or now, reverse=True)
            else:
                matching.sort(key=lambda j: (j.run_at, self._order[j.id]))
            stop = None if end < 0 else end + 1
            return [j.model_copy(deep=True) for j in matching[start:stop]]

    async def clean(self, state: JobState, older_than: datetime, limit: int) -> list[str]:
        self._check_terminal(state)
        async with self._lock:
            stale = sorted(
                (j for j in self._jobs.values()
                 if j.state == state and j.finished_at and j.finished_at < older_than),
                key=lambda j: j.finished_at,
            )[:limit]
            for job in stale:
                del self._jobs[job.id]
                self._order.pop(job.id, None)
            return [job.id for job in stale]

    async def set_paused(self, paused: bool) -> None:
        self._paused = paused

    async def is_paused(self) -> bool:
        return self._paused
