"""
Error handler: classify, decide, persist.

handle() is the single place a job failure turns into an ErrorRecord and
a recovery decision. The worker acts on the decision; it never decides
retry policy itself.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..execution.errors import (
    EncodeError,
    EncodeTimeoutError,
    FFmpegNotFoundError,
)
from ..plans.validation import PlanValidationError
from .catalog import (
    ERROR_CATALOG,
    STAGE_CATEGORIES,
    ErrorCategory,
    ErrorDefinition,
    RecoveryAction,
    Stage,
    get_definition,
    match_definition,
)
from .ffmpeg_parser import parse_ffmpeg_stderr
from .store import ErrorRecord, ErrorStore

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30000

STDERR_RECORD_CHARS = 4000


@dataclass(frozen=True)
class ErrorContext:
    """Where the error happened."""

    job_id: str
    stage: Optional[Stage] = None
    project_id: Optional[str] = None
    attempt: int = 0


@dataclass(frozen=True)
class Decision:
    action: RecoveryAction
    delay_ms: Optional[int] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RecoveryAction.RETRY


@dataclass(frozen=True)
class HandledError:
    record: ErrorRecord
    decision: Decision

    def to_api_error(self) -> Dict[str, Any]:
        """ApiError body for the job: category as code, catalog message, specifics in details."""
        return {
            "code": self.record.category.value,
            "message": self.record.message,
            "details": {
                "errorCode": self.record.error_code,
                "stage": self.record.stage.value,
                "action": self.record.action.value,
                "recordId": self.record.id,
                "technicalMessage": self.record.technical_message,
                "userAction": self.record.user_action,
            },
        }


def backoff_delay_ms(definition: ErrorDefinition, attempt: int) -> int:
    """Catalog delay for this attempt, else exponential (1s, 2s, 4s ... capped at 30s)."""
    if attempt < len(definition.retry_delays_ms):
        return definition.retry_delays_ms[attempt]
    return min(BACKOFF_BASE_MS * (2 ** attempt), BACKOFF_CAP_MS)


class ErrorHandler:
    """
    Turns exceptions into persisted ErrorRecords plus a Decision.

    Args:
        store: Append-only record store
        backoff_scale: Multiplier applied to retry delays (tests use 0)
    """

    def __init__(self, store: ErrorStore, backoff_scale: float = 1.0):
        self.store = store
        self.backoff_scale = backoff_scale

    def _stage_of(self, error: BaseException, context: ErrorContext) -> Stage:
        stage = getattr(error, "stage", None)
        if isinstance(stage, Stage):
            return stage
        if context.stage is not None:
            return context.stage
        return Stage.ENCODE

    def classify(self, error: BaseException, stage: Stage) -> tuple:
        """
        Returns:
            (definition, technical_message, stderr_tail)
        """
        technical = str(error) or error.__class__.__name__
        stderr_tail = None

        if isinstance(error, FFmpegNotFoundError):
            return get_definition("FFMPEG_NOT_FOUND"), technical, None

        if isinstance(error, EncodeTimeoutError):
            return get_definition("FFMPEG_TIMEOUT"), technical, error.stderr[-STDERR_RECORD_CHARS:] or None

        if isinstance(error, EncodeError):
            stderr_tail = error.stderr[-STDERR_RECORD_CHARS:] or None
            parsed = parse_ffmpeg_stderr(error.stderr)
            return parsed.definition, f"{technical}: {parsed.detail}", stderr_tail

        if isinstance(error, PlanValidationError) and error.code in ERROR_CATALOG:
            definition = ERROR_CATALOG[error.code]
            if definition.category == STAGE_CATEGORIES[stage]:
                return definition, technical, None

        category: ErrorCategory = STAGE_CATEGORIES[stage]
        return match_definition(category, technical), technical, stderr_tail

    def decide(self, definition: ErrorDefinition, attempt: int) -> Decision:
        if (
            definition.category == ErrorCategory.NETWORK_ERROR
            and definition.action == RecoveryAction.RETRY
            and attempt < definition.max_retries
        ):
            delay = round(backoff_delay_ms(definition, attempt) * self.backoff_scale)
            return Decision(RecoveryAction.RETRY, delay)
        if definition.action == RecoveryAction.MANUAL_INTERVENTION:
            return Decision(RecoveryAction.MANUAL_INTERVENTION)
        return Decision(RecoveryAction.ABORT)

    def handle(self, error: BaseException, context: ErrorContext) -> HandledError:
        """
        Classify error, decide recovery, persist the record.

        Args:
            error: The exception raised by a pipeline stage
            context: Job id, stage fallback, project id, attempt number (0-based)

        Returns:
            HandledError with the persisted record and the decision
        """
        stage = self._stage_of(error, context)
        definition, technical, stderr_tail = self.classify(error, stage)
        decision = self.decide(definition, context.attempt)

        record = ErrorRecord(
            job_id=context.job_id,
            project_id=context.project_id,
            stage=stage,
            category=definition.category,
            error_code=definition.code,
            message=definition.message,
            technical_message=technical,
            stderr_tail=stderr_tail,
            action=decision.action,
            attempt=context.attempt,
            retry_delay_ms=decision.delay_ms,
            user_action=definition.user_action,
            admin_action=definition.admin_action,
        )
        self.store.append(record)

        log = logger.warning if decision.should_retry else logger.error
        log(
            f"[ErrorHandler] Job {context.job_id}: {definition.category.value}/{definition.code} "
            f"at {stage.value} -> {decision.action.value}"
            + (f" in {decision.delay_ms}ms" if decision.delay_ms is not None else "")
            + f" ({technical})"
        )
        return HandledError(record=record, decision=decision)
