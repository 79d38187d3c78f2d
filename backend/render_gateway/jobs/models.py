"""
Job data models.

A Job is one asynchronous render request. It is created at enqueue time,
mutated only by the render worker, and read by the HTTP layer through
snapshots (see registry.py).

All models use Pydantic for validation.
State transitions are validated externally (see state.py).
"""

import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..plans.models import ExecutionPlan
from ..plans.transforms import TransformOptions

# Full log buffer keeps this many lines; logsTail exposes the last LOGS_TAIL_CHARS
MAX_LOG_LINES = 500
LOGS_TAIL_CHARS = 2000


def new_job_id() -> str:
    """job_<epoch ms>_<8 hex>"""
    return f"job_{int(time.time() * 1000)}_{os.urandom(4).hex()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class JobStatus(str, Enum):
    """
    Job lifecycle status.

    queued -> running -> done | error | partial_success
    """

    QUEUED = "queued"  # Admitted, waiting for the worker
    RUNNING = "running"  # Owned by the worker
    DONE = "done"  # Output rendered and verified
    ERROR = "error"  # Failed with a classified ApiError
    PARTIAL_SUCCESS = "partial_success"  # No renderer; plan and command returned as artifacts


class JobKind(str, Enum):
    EXECUTE = "execute"  # /api/execute transform request
    EXECUTE_PLAN = "execute_plan"  # /api/execute-plan caller-supplied plan


class ApiError(BaseModel):
    """Structured error. code is a stable category, never raw process output."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class Job(BaseModel):
    """
    One render request.

    Exactly one of plan (execute_plan) or transform (execute) is set at
    admission. Execute jobs get their plan built by the worker once the
    source has been probed.
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str = Field(default_factory=new_job_id)
    kind: JobKind
    project_id: Optional[str] = None

    # Request
    source_path: str
    plan: Optional[ExecutionPlan] = None
    transform: Optional[TransformOptions] = None
    output_name: Optional[str] = None

    # State
    status: JobStatus = JobStatus.QUEUED
    queue_position: int = 0
    progress_pct: int = 0
    eta_sec: Optional[float] = None
    attempts: int = 0

    # Execution metadata
    engine: Optional[str] = None
    fallback_chain: List[Dict[str, Any]] = Field(default_factory=list)
    command: Optional[str] = None
    encoder_used: Optional[str] = None
    exit_code: Optional[int] = None
    logs: List[str] = Field(default_factory=list)

    # Outcome
    output_path: Optional[str] = None
    output_url: Optional[str] = None
    output_size: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[ApiError] = None
    artifacts: Optional[Dict[str, Any]] = None

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def logs_tail(self) -> str:
        return "\n".join(self.logs)[-LOGS_TAIL_CHARS:]

    def append_log(self, line: str) -> None:
        self.logs.append(line)
        if len(self.logs) > MAX_LOG_LINES:
            del self.logs[: len(self.logs) - MAX_LOG_LINES]

    def to_status_response(self) -> Dict[str, Any]:
        """Body of GET /api/jobs/{id}. Optional fields are omitted when unset."""
        body: Dict[str, Any] = {
            "ok": True,
            "jobId": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "queuePosition": self.queue_position,
            "progressPct": self.progress_pct,
            "logsTail": self.logs_tail,
            "createdAt": _iso(self.created_at),
        }
        optional = {
            "projectId": self.project_id,
            "etaSec": self.eta_sec,
            "engine": self.engine,
            "outputUrl": self.output_url,
            "outputSize": self.output_size,
            "durationMs": self.duration_ms,
            "error": self.error.to_dict() if self.error else None,
            "artifacts": self.artifacts,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        if self.fallback_chain:
            body["fallbackChain"] = self.fallback_chain
        return body

    def to_logs_response(self) -> Dict[str, Any]:
        """Body of GET /api/jobs/{id}/logs."""
        return {
            "ok": True,
            "jobId": self.id,
            "status": self.status.value,
            "progressPct": self.progress_pct,
            "etaSec": self.eta_sec,
            "command": self.command,
            "logs": list(self.logs),
            "logsTail": self.logs_tail,
            "engine": self.engine,
            "fallbackChain": self.fallback_chain,
            "encoderUsed": self.encoder_used,
            "exitCode": self.exit_code,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }

    def to_summary(self) -> Dict[str, Any]:
        """Row for GET /api/jobs."""
        return {
            "jobId": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "projectId": self.project_id,
            "progressPct": self.progress_pct,
            "queuePosition": self.queue_position,
            "engine": self.engine,
            "outputUrl": self.output_url,
            "errorCode": self.error.code if self.error else None,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
        }
