"""
FIFO job queue.

Single-node, one active job at a time, strict enqueue order.

Design rules:
- No prioritization
- No parallel execution
- A job's position only ever moves towards the head
"""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

from .errors import QueueClosedError

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Job-level FIFO queue with a single execution slot.

    The HTTP layer calls enqueue(); the render worker calls take() and
    release(). Positions are 1-indexed (1 = runs next); 0 means the job
    currently holds the execution slot; -1 means it is not queued.
    """

    def __init__(self) -> None:
        self._queue: Deque[str] = deque()
        self._current_job_id: Optional[str] = None
        self._closed = False
        self._cond = threading.Condition()

    # =========================================================================
    # Admission (HTTP side)
    # =========================================================================

    def enqueue(self, job_id: str) -> int:
        """
        Add a job to the tail of the queue.

        Returns:
            Position in queue (1-indexed)

        Raises:
            QueueClosedError: If the queue has been closed
        """
        with self._cond:
            if self._closed:
                raise QueueClosedError()
            if job_id in self._queue:
                return self._queue.index(job_id) + 1
            if self._current_job_id == job_id:
                return 0
            self._queue.append(job_id)
            position = len(self._queue)
            self._cond.notify()
        logger.info(f"[Queue] Job {job_id} enqueued at position {position}")
        return position

    # =========================================================================
    # Execution slot (worker side)
    # =========================================================================

    def take(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Pop the head of the queue and hold the execution slot for it.

        Blocks until a job is available, the queue is closed, or timeout
        elapses.

        Returns:
            The job id, or None on close/timeout
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or (self._queue and self._current_job_id is None),
                timeout=timeout,
            )
            if not ready or self._closed:
                return None
            job_id = self._queue.popleft()
            self._current_job_id = job_id
        logger.info(f"[Queue] Job {job_id} acquired execution slot")
        return job_id

    def release(self, job_id: str) -> None:
        """Release the execution slot after the job reaches a terminal state."""
        with self._cond:
            if self._current_job_id != job_id:
                logger.warning(f"[Queue] Job {job_id} tried to release but wasn't executing")
                return
            self._current_job_id = None
            self._cond.notify_all()
        logger.info(f"[Queue] Job {job_id} released execution slot")

    def close(self) -> List[str]:
        """
        Stop admitting jobs and wake the worker.

        Returns:
            Job ids that were still waiting (never picked up)
        """
        with self._cond:
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        if pending:
            logger.warning(f"[Queue] Closed with {len(pending)} job(s) never started")
        return pending

    # =========================================================================
    # Reads
    # =========================================================================

    def get_queue_position(self, job_id: str) -> int:
        """
        Returns:
            Position (1-indexed), 0 if currently executing, -1 if not in queue
        """
        with self._cond:
            if self._current_job_id == job_id:
                return 0
            try:
                return self._queue.index(job_id) + 1
            except ValueError:
                return -1

    def queued_job_ids(self) -> List[str]:
        with self._cond:
            return list(self._queue)

    @property
    def current_job_id(self) -> Optional[str]:
        with self._cond:
            return self._current_job_id

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed
