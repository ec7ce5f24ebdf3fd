"""Retry and retention policies."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from markup_worker.config import Settings


@dataclass
class RetryPolicy:
    """Fixed-delay retry policy.

    A failed attempt is re-delayed by the same `delay_ms` every time until
    `max_attempts` handler invocations have been made.
    """
    max_attempts: int = 3
    delay_ms: int = 10 * 60 * 1000

    def should_retry(self, attempts_made: int, max_attempts: Optional[int] = None) -> bool:
        """True while attempts remain; `max_attempts` overrides the policy's ceiling for one job."""
        ceiling = self.max_attempts if max_attempts is None else max_attempts
        return attempts_made < ceiling

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt (same for every attempt)."""
        return self.delay_ms / 1000.0

    def next_run_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(seconds=self.get_delay(attempt))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(max_attempts=settings.max_attempts, delay_ms=settings.retry_delay_ms)


@dataclass
class RetentionPolicy:
    """How many finished jobs of one state to keep, and for how long."""
    max_age_seconds: int
    max_count: int

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.max_age_seconds)


DEFAULT_COMPLETED_RETENTION = RetentionPolicy(max_age_seconds=24 * 3600, max_count=100)
DEFAULT_FAILED_RETENTION = RetentionPolicy(max_age_seconds=7 * 24 * 3600, max_count=1000)


def retention_from_settings(settings: Settings) -> tuple[RetentionPolicy, RetentionPolicy]:
    """(completed, failed) retention policies."""
    return (
        RetentionPolicy(settings.completed_retention_seconds, settings.completed_retention_count),
        RetentionPolicy(settings.failed_retention_seconds, settings.failed_retention_count),
    )
