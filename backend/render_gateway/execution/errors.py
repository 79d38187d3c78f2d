"""
Execution-specific errors.

Every execution error carries the pipeline stage it was raised from.
The error handler derives the failure category from that stage, so
raising the right subclass is all a stage has to do.
"""

from typing import Optional

from ..failures.catalog import Stage


class ExecutionError(Exception):
    """
    Base exception for render execution failures.

    These errors end (or retry) one job; the gateway keeps running.
    """

    stage: Stage = Stage.ENCODE

    def __init__(self, message: str, *, stage: Optional[Stage] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class SourceNotFoundError(ExecutionError):
    """Local source is missing, unreadable or empty."""

    stage = Stage.VALIDATION


class InvalidSourcePathError(ExecutionError):
    """Source path escapes the allowed directories."""

    stage = Stage.VALIDATION


class AssetDownloadError(ExecutionError):
    """Remote asset could not be fetched. Transient; retried."""

    stage = Stage.DOWNLOAD


class AssetAuthError(ExecutionError):
    """Remote host refused credentials (401/403)."""

    stage = Stage.AUTH


class FFmpegNotFoundError(ExecutionError):
    stage = Stage.ENCODE

    def __init__(self) -> None:
        super().__init__("FFmpeg not found on PATH or at FFMPEG_PATH")


class EncodeError(ExecutionError):
    """
    Encoder exited non-zero.

    stderr is kept (tail only) for classification and operator inspection.
    """

    stage = Stage.ENCODE

    def __init__(self, message: str, *, stderr: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class EncodeTimeoutError(EncodeError):
    def __init__(self, timeout_seconds: float, *, stderr: str = ""):
        super().__init__(
            f"Render exceeded time limit of {timeout_seconds:.0f}s and was killed",
            stderr=stderr,
        )
        self.timeout_seconds = timeout_seconds


class OutputMissingError(ExecutionError):
    """Render reported success but the output file is missing or empty."""

    stage = Stage.STORAGE


class UnsupportedEngineError(ExecutionError):
    """No compiler exists for the requested engine."""

    stage = Stage.PLAN_VALIDATION
