"""Queue exceptions."""


class QueueError(Exception):
    """Base class for queue errors."""


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(QueueError):
    """Operation not allowed in the job's current state."""

    def __init__(self, job_id: str, state: str, message: str = ""):
        super().__init__(message or f"Job {job_id} is {state}")
        self.job_id = job_id
        self.state = state


class StoreUnavailableError(QueueError):
    """The backing store could not be reached."""
