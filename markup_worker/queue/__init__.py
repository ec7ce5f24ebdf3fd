"""Queue module for debounced scrape jobs.

Features:
- One pending job per URL (debounce by replacement)
- Fixed-delay retry with bounded attempts
- Redis-backed store with atomic claims
- Management operations for operators
"""

from .job_queue import JobQueue, job_queue, get_queue
from .models import Job, JobState, JobSummary, QueueStats, SubmitReceipt, CleanResult, job_id_for
from .errors import QueueError, JobNotFoundError, JobStateError, StoreUnavailableError
from .events import QueueEvents
from .policy import RetryPolicy, RetentionPolicy
from .store import JobStore, MemoryJobStore
from .redis_store import RedisJobStore

__all__ = [
    'JobQueue',
    'job_queue',
    'get_queue',
    'Job',
    'JobState',
    'JobSummary',
    'QueueStats',
    'SubmitReceipt',
    'CleanResult',
    'job_id_for',
    'QueueError',
    'JobNotFoundError',
    'JobStateError',
    'StoreUnavailableError',
    'QueueEvents',
    'RetryPolicy',
    'RetentionPolicy',
    'JobStore',
    'MemoryJobStore',
    'RedisJobStore',
]
