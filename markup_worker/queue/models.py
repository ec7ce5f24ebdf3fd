"""Job records and the read models returned by the queue."""

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

JOB_NAME = "scrape-markup"
JOB_ID_PREFIX = "markup-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def job_id_for(resource_key: str) -> str:
    """Deterministic job id for a resource key (the target URL)."""
    digest = hashlib.sha256(resource_key.encode("utf-8")).hexdigest()[:32]
    return f"{JOB_ID_PREFIX}{digest}"


def new_token() -> str:
    return uuid.uuid4().hex


class JobState(str, Enum):
    """Job states.

    WAITING is never stored: a DELAYED job whose run_at has passed is
    reported as WAITING.
    """
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


PENDING_STATES = (JobState.DELAYED, JobState.WAITING, JobState.ACTIVE)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class Job(BaseModel):
    """A scrape job as stored in the queue."""
    id: str
    resource_key: str
    name: str = JOB_NAME
    payload: dict
    state: JobState = JobState.DELAYED
    attempts_made: int = 0
    max_attempts: int = 3
    run_at: datetime
    progress: int = 0
    result: Optional[Any] = None
    failure_reason: Optional[str] = None
    error_history: list[str] = Field(default_factory=list)
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    token: str = Field(default_factory=new_token)

    @property
    def url(self) -> Optional[str]:
        return self.payload.get("url")

    def state_at(self, now: datetime) -> JobState:
        """State as seen by readers at `now` (delayed jobs past run_at are waiting)."""
        if self.state == JobState.DELAYED and self.run_at <= now:
            return JobState.WAITING
        return self.state

    def view(self, now: datetime) -> "Job":
        """Copy of the record with the reader-facing state."""
        return self.model_copy(update={"state": self.state_at(now)})

    def summary(self, now: datetime) -> "JobSummary":
        return JobSummary(
            id=self.id,
            url=self.url,
            state=self.state_at(now),
            progress=self.progress,
            attempts_made=self.attempts_made,
            run_at=self.run_at,
            created_at=self.created_at,
            processed_at=self.processed_at,
            finished_at=self.finished_at,
        )


class JobSummary(BaseModel):
    """Compact job listing entry."""
    id: str
    url: Optional[str]
    state: JobState
    progress: int
    attempts_made: int
    run_at: datetime
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SubmitReceipt(BaseModel):
    """Acknowledgement that a job was scheduled (never its outcome)."""
    job_id: str
    url: str
    status: JobState = JobState.DELAYED
    delay_ms: int
    will_run_at: datetime


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0


class CleanResult(BaseModel):
    cleaned_completed: int
    cleaned_failed: int
