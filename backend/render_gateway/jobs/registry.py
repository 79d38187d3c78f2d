"""
In-memory job registry.

The registry is the job table. The worker is its only mutator; the HTTP
layer only adds jobs at admission and reads snapshots. Readers never get
the live Job object, so a poll can never observe a half-applied update.
"""

import threading
from typing import Any, Dict, List, Optional

from .errors import InvalidStateTransitionError, JobNotFoundError
from .models import Job, JobStatus
from .state import is_job_terminal, validate_job_transition

# Oldest terminal jobs are evicted beyond this many entries
DEFAULT_MAX_JOBS = 1000


class JobRegistry:
    """
    Thread-safe job table returning deep-copied snapshots.

    Args:
        max_jobs: Retention ceiling; only terminal jobs are ever evicted
    """

    def __init__(self, max_jobs: int = DEFAULT_MAX_JOBS):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._max_jobs = max_jobs

    def add_job(self, job: Job) -> Job:
        """
        Add a job and return a snapshot of it.

        Raises:
            ValueError: If a job with the same ID already exists
        """
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job with ID '{job.id}' already exists")
            self._jobs[job.id] = job
            self._evict_locked()
            return job.model_copy(deep=True)

    def _evict_locked(self) -> None:
        excess = len(self._jobs) - self._max_jobs
        if excess <= 0:
            return
        terminal = sorted(
            (j for j in self._jobs.values() if is_job_terminal(j.status)),
            key=lambda j: j.created_at,
        )
        for job in terminal[:excess]:
            del self._jobs[job.id]

    def _get_locked(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        """Snapshot of a job, or None."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def get_job_or_raise(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: If the job does not exist
        """
        with self._lock:
            return self._get_locked(job_id).model_copy(deep=True)

    def list_jobs(self, limit: Optional[int] = None) -> List[Job]:
        """Snapshots ordered by creation time, newest first."""
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            if limit is not None:
                jobs = jobs[:limit]
            return [j.model_copy(deep=True) for j in jobs]

    def update(self, job_id: str, *, status: Optional[JobStatus] = None, **changes: Any) -> Job:
        """
        Apply field changes (and optionally a status transition) atomically.

        Args:
            job_id: Job to update
            status: Target status, validated against the state machine
            **changes: Job field names and their new values

        Returns:
            Snapshot after the update

        Raises:
            JobNotFoundError: Unknown job
            InvalidStateTransitionError: Illegal transition, or any change to a terminal job
        """
        with self._lock:
            job = self._get_locked(job_id)
            if status is not None:
                validate_job_transition(job.status, status)
            elif is_job_terminal(job.status):
                raise InvalidStateTransitionError("job", job.status.value, job.status.value)
            for name, value in changes.items():
                setattr(job, name, value)
            if status is not None:
                job.status = status
            return job.model_copy(deep=True)

    def append_log(self, job_id: str, line: str) -> None:
        """
        Append one line to the job's log buffer.

        Raises:
            InvalidStateTransitionError: If the job is already terminal
        """
        with self._lock:
            job = self._get_locked(job_id)
            if is_job_terminal(job.status):
                raise InvalidStateTransitionError("job", job.status.value, job.status.value)
            job.append_log(line)
