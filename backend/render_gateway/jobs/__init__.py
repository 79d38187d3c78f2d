"""
Job queue: admission, lifecycle and the single render worker.

Jobs run strictly one at a time in FIFO order:
    queued -> running -> done | error | partial_success
Terminal jobs are immutable.
"""

from .errors import (
    InvalidStateTransitionError,
    JobError,
    JobNotFoundError,
    QueueClosedError,
)
from .models import ApiError, Job, JobKind, JobStatus
from .queue import JobQueue
from .registry import JobRegistry
from .state import can_transition_job, is_job_terminal

__all__ = [
    # Errors
    "JobError",
    "JobNotFoundError",
    "InvalidStateTransitionError",
    "QueueClosedError",
    # Models
    "ApiError",
    "Job",
    "JobKind",
    "JobStatus",
    # State validation
    "can_transition_job",
    "is_job_terminal",
    # Queue
    "JobQueue",
    "JobRegistry",
]
