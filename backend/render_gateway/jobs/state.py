"""
Job state machine.

queued -> running -> done | error | partial_success

INVARIANT: Terminal states are immutable. A job never re-enters queued or
running once it is done, error or partial_success, and a terminal status
is never overwritten by another terminal status. NETWORK retries happen
while the job stays running; they do not move it back to queued.
"""

from typing import FrozenSet, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import JobStatus


TERMINAL_JOB_STATES: FrozenSet[JobStatus] = frozenset({
    JobStatus.DONE,
    JobStatus.ERROR,
    JobStatus.PARTIAL_SUCCESS,
})


def is_job_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_JOB_STATES


_JOB_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.QUEUED, JobStatus.RUNNING),

    (JobStatus.RUNNING, JobStatus.DONE),
    (JobStatus.RUNNING, JobStatus.ERROR),
    (JobStatus.RUNNING, JobStatus.PARTIAL_SUCCESS),

    # Admission-time failure (e.g. worker shut down before pickup)
    (JobStatus.QUEUED, JobStatus.ERROR),
}


def can_transition_job(from_status: JobStatus, to_status: JobStatus) -> bool:
    """
    Check if a job state transition is legal.

    Staying in the same non-terminal state is allowed (progress updates).

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


def validate_job_transition(from_status: JobStatus, to_status: JobStatus) -> None:
    """
    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition_job(from_status, to_status):
        raise InvalidStateTransitionError("job", from_status.value, to_status.value)
