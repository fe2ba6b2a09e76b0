"""
State transition validation for render jobs.

Job lifecycle: QUEUED → PROCESSING → COMPLETED | FAILED | CANCELLED
A queued job may also be cancelled directly (it never touched the engine).

INVARIANT: Terminal states (COMPLETED, FAILED, CANCELLED) are immutable.
A retry never revives a terminal job; it creates a new job with the same
inputs.
"""

from datetime import datetime
from typing import FrozenSet, Optional, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import JobStatus, RenderJob


TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


_JOB_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    # Handoff acquired
    (JobStatus.QUEUED, JobStatus.PROCESSING),

    # Terminal outcomes
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),

    # Never admitted to the engine
    (JobStatus.QUEUED, JobStatus.CANCELLED),
    (JobStatus.QUEUED, JobStatus.FAILED),
}


def is_job_terminal(status: JobStatus) -> bool:
    """
    Check if a job status is terminal (immutable).

    Args:
        status: The job status to check

    Returns:
        True if the status is terminal, False otherwise
    """
    return status in TERMINAL_JOB_STATES


def can_transition_job(from_status: JobStatus, to_status: JobStatus) -> bool:
    """
    Check if a job state transition is legal.

    Staying in the same non-terminal state is allowed (idempotent updates).

    Args:
        from_status: Current job status
        to_status: Target job status

    Returns:
        True if the transition is allowed, False otherwise
    """
    if is_job_terminal(from_status):
        return False

    if from_status == to_status:
        return True

    return (from_status, to_status) in _JOB_TRANSITIONS


def validate_job_transition(
    from_status: JobStatus,
    to_status: JobStatus,
    job_id: Optional[str] = None,
) -> None:
    """
    Validate a job state transition, raising an exception if illegal.

    Args:
        from_status: Current job status
        to_status: Target job status
        job_id: Optional job id for the error message

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition_job(from_status, to_status):
        raise InvalidStateTransitionError(from_status.value, to_status.value, job_id=job_id)


def transition_job(job: RenderJob, to_status: JobStatus, error: Optional[str] = None) -> None:
    """
    Move a job to `to_status`, stamping timestamps.

    PROCESSING stamps started_at, terminal states stamp completed_at.
    `error` is recorded only for FAILED.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    validate_job_transition(job.status, to_status, job_id=job.id)
    if job.status == to_status:
        return

    job.status = to_status
    now = datetime.now()
    if to_status == JobStatus.PROCESSING:
        job.started_at = now
    elif is_job_terminal(to_status):
        job.completed_at = now
        if to_status == JobStatus.FAILED:
            job.error = error or "Render failed"
