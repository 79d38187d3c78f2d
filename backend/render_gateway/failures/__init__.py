"""
Failure handling: catalog, classification and error records.

ErrorHandler lives in failures.handler and is imported from there; it
depends on the plan and execution packages, which themselves depend on
the catalog here.
"""

from .catalog import ERROR_CATALOG, ErrorCategory, ErrorDefinition, RecoveryAction, Stage
from .ffmpeg_parser import parse_ffmpeg_stderr
from .store import ErrorRecord, ErrorStore, ErrorStoreError

__all__ = [
    "ERROR_CATALOG",
    "ErrorCategory",
    "ErrorDefinition",
    "RecoveryAction",
    "Stage",
    "parse_ffmpeg_stderr",
    "ErrorRecord",
    "ErrorStore",
    "ErrorStoreError",
]
