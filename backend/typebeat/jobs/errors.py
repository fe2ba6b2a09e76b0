"""
Job-specific error types.

All errors inherit from JobError for easy catching.
Errors are explicit and provide actionable messages.
"""

from typing import List, Optional


class JobError(Exception):
    """Base exception for all job-related failures."""
    pass


class JobNotFoundError(JobError):
    """Raised when a job cannot be found in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidStateTransitionError(JobError):
    """Raised when attempting an illegal state transition."""

    def __init__(self, current_state: str, target_state: str, job_id: Optional[str] = None):
        self.job_id = job_id
        self.current_state = current_state
        self.target_state = target_state
        prefix = f"Job {job_id}: invalid" if job_id else "Invalid"
        super().__init__(
            f"{prefix} job state transition: "
            f"{current_state} -> {target_state}"
        )


class ValidationError(JobError):
    """
    Raised when a batch is rejected before any engine activity.

    The whole batch is refused; no job is created and the engine is
    never touched.
    """

    def __init__(self, message: str, pair_ids: Optional[List[str]] = None):
        self.pair_ids = pair_ids or []
        super().__init__(message)


class BatchInProgressError(JobError):
    """Raised when a batch is submitted while another one is still running."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} is still running")
