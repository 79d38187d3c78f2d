"""
Render failure taxonomy.

Defines the failure categories, the pipeline stages they are attributed
to, and the catalog of concrete error codes with user-facing messages and
recovery policy.

Categories are coarse and stable (they appear in ApiError.code).
Error codes are fine-grained and live in ApiError.details.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple


# =============================================================================
# Categories and stages
# =============================================================================

class ErrorCategory(str, Enum):
    """
    Failure category.

    The first six are job-level categories decided by the error handler.
    The last three are transport/contract categories raised on the
    calling side (see client.py).
    """

    INPUT_ERROR = "INPUT_ERROR"
    PLAN_ERROR = "PLAN_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    FFMPEG_ERROR = "FFMPEG_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    AUTH_ERROR = "AUTH_ERROR"

    HTTP_ERROR = "HTTP_ERROR"
    INVALID_CONTENT_TYPE = "INVALID_CONTENT_TYPE"
    INVALID_JSON = "INVALID_JSON"


class Stage(str, Enum):
    """Pipeline stage at which a failure was observed."""

    VALIDATION = "validation"
    PLAN_VALIDATION = "plan_validation"
    DOWNLOAD = "download"
    ENCODE = "encode"
    STORAGE = "storage"
    AUTH = "auth"


STAGE_CATEGORIES: Dict[Stage, ErrorCategory] = {
    Stage.VALIDATION: ErrorCategory.INPUT_ERROR,
    Stage.PLAN_VALIDATION: ErrorCategory.PLAN_ERROR,
    Stage.DOWNLOAD: ErrorCategory.NETWORK_ERROR,
    Stage.ENCODE: ErrorCategory.FFMPEG_ERROR,
    Stage.STORAGE: ErrorCategory.STORAGE_ERROR,
    Stage.AUTH: ErrorCategory.AUTH_ERROR,
}


class RecoveryAction(str, Enum):
    RETRY = "RETRY"
    ABORT = "ABORT"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"


# =============================================================================
# Catalog
# =============================================================================

@dataclass(frozen=True)
class ErrorDefinition:
    """
    One catalog entry.

    Attributes:
        code: Stable error code
        category: Category the code belongs to
        message: User-facing message (never raw process output)
        action: Recovery action when this code is hit
        max_retries: Attempt ceiling for RETRY codes
        retry_delays_ms: Explicit per-attempt delays; empty means exponential
        user_action: What the caller can do about it
        admin_action: What an operator should check
        patterns: Case-insensitive regexes matched against the error text
    """

    code: str
    category: ErrorCategory
    message: str
    action: RecoveryAction = RecoveryAction.ABORT
    max_retries: int = 0
    retry_delays_ms: Tuple[int, ...] = ()
    user_action: Optional[str] = None
    admin_action: Optional[str] = None
    patterns: Tuple[str, ...] = ()
    _compiled: Tuple[Pattern[str], ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "_compiled", tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        )

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self._compiled)

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "action": self.action.value,
            "maxRetries": self.max_retries,
            "userAction": self.user_action,
            "adminAction": self.admin_action,
        }


_DEFINITIONS: List[ErrorDefinition] = [
    # ---- INPUT ----
    ErrorDefinition(
        "INPUT_FILE_CORRUPTED", ErrorCategory.INPUT_ERROR,
        "Source file is corrupted or unreadable",
        user_action="Upload a different file",
        patterns=(r"invalid data found", r"moov atom not found", r"corrupt", r"empty"),
    ),
    ErrorDefinition(
        "INPUT_FILE_NOT_FOUND", ErrorCategory.INPUT_ERROR,
        "Source file not found",
        user_action="Upload the source again or check the source path",
        patterns=(r"not found", r"no such file", r"does not exist"),
    ),
    ErrorDefinition(
        "INPUT_INVALID_FORMAT", ErrorCategory.INPUT_ERROR,
        "Unsupported source or output format",
        user_action="Use MP4, WebM or MOV",
        patterns=(r"unsupported", r"format"),
    ),
    ErrorDefinition(
        "INPUT_MISSING_FIELD", ErrorCategory.INPUT_ERROR,
        "Request is missing a required field",
        user_action="Check the request body against the API contract",
        patterns=(r"missing", r"required"),
    ),
    # ---- PLAN ----
    ErrorDefinition(
        "PLAN_DANGLING_REFERENCE", ErrorCategory.PLAN_ERROR,
        "Execution plan references an asset that was not provided",
        user_action="Provide an asset_url for every segment and audio track",
        patterns=(r"dangling", r"no asset"),
    ),
    ErrorDefinition(
        "PLAN_INVALID_TIMING", ErrorCategory.PLAN_ERROR,
        "Execution plan timing is inconsistent",
        user_action="Check trim bounds, speed and timeline positions of every segment",
        patterns=(r"duration", r"trim", r"overlap", r"timing", r"speed", r"fade"),
    ),
    ErrorDefinition(
        "PLAN_INVALID_STRUCTURE", ErrorCategory.PLAN_ERROR,
        "Execution plan is structurally invalid",
        user_action="Rebuild the plan; at least one base-layer segment is required",
    ),
    # ---- NETWORK ----
    ErrorDefinition(
        "NETWORK_INVALID_URL", ErrorCategory.NETWORK_ERROR,
        "Source URL is invalid or unreachable",
        user_action="Check the source URL",
        patterns=(r"invalid url", r"unsupported protocol", r"404", r"name or service not known"),
    ),
    ErrorDefinition(
        "NETWORK_TIMEOUT", ErrorCategory.NETWORK_ERROR,
        "Source download timed out",
        action=RecoveryAction.RETRY, max_retries=2, retry_delays_ms=(3000, 8000),
        user_action="Retry later or use a faster source host",
        patterns=(r"timed? ?out",),
    ),
    ErrorDefinition(
        "NETWORK_DOWNLOAD_FAILED", ErrorCategory.NETWORK_ERROR,
        "Failed to download source media",
        action=RecoveryAction.RETRY, max_retries=3, retry_delays_ms=(2000, 5000, 10000),
        user_action="Check that the source URL is reachable",
        admin_action="Check outbound connectivity from the render host",
        patterns=(r"download", r"fetch", r"connection", r"5\d\d"),
    ),
    # ---- FFMPEG ----
    ErrorDefinition(
        "FFMPEG_NOT_FOUND", ErrorCategory.FFMPEG_ERROR,
        "FFmpeg is not installed on the render host",
        action=RecoveryAction.MANUAL_INTERVENTION,
        admin_action="Install FFmpeg or set FFMPEG_PATH",
        patterns=(r"ffmpeg not found", r"ffmpeg binary"),
    ),
    ErrorDefinition(
        "FFMPEG_TIMEOUT", ErrorCategory.FFMPEG_ERROR,
        "Render exceeded its time limit and was stopped",
        user_action="Shorten the output or lower the output resolution",
        admin_action="Raise MAX_RENDER_TIME if long renders are expected",
        patterns=(r"exceeded", r"time limit"),
    ),
    ErrorDefinition(
        "FFMPEG_CODEC_ERROR", ErrorCategory.FFMPEG_ERROR,
        "Requested codec is not available",
        admin_action="Check the FFmpeg build for the requested encoder",
        patterns=(r"unknown encoder", r"unknown decoder", r"codec not currently supported"),
    ),
    ErrorDefinition(
        "FFMPEG_FILTER_ERROR", ErrorCategory.FFMPEG_ERROR,
        "Filter graph was rejected by FFmpeg",
        admin_action="Inspect the stored command and stderr for this job",
        patterns=(r"error initializing (complex )?filter", r"no such filter", r"filtergraph"),
    ),
    ErrorDefinition(
        "FFMPEG_ENCODING_FAILED", ErrorCategory.FFMPEG_ERROR,
        "Video encoding failed",
        admin_action="Inspect the stored command and stderr for this job",
        patterns=(r"encod", r"exit code", r"conversion failed"),
    ),
    # ---- STORAGE ----
    ErrorDefinition(
        "STORAGE_DISK_FULL", ErrorCategory.STORAGE_ERROR,
        "Render host is out of disk space",
        action=RecoveryAction.MANUAL_INTERVENTION,
        admin_action="Free disk space in the data directory",
        patterns=(r"no space left", r"disk full", r"enospc"),
    ),
    ErrorDefinition(
        "STORAGE_OUTPUT_EMPTY", ErrorCategory.STORAGE_ERROR,
        "Render produced no output",
        admin_action="Inspect the stored command and stderr for this job",
        patterns=(r"empty", r"missing", r"0 bytes"),
    ),
    ErrorDefinition(
        "STORAGE_WRITE_FAILED", ErrorCategory.STORAGE_ERROR,
        "Could not write the rendered file",
        admin_action="Check permissions on the outputs directory",
        patterns=(r"permission denied", r"read-only", r"write"),
    ),
    # ---- AUTH ----
    ErrorDefinition(
        "AUTH_UNAUTHORIZED", ErrorCategory.AUTH_ERROR,
        "Source host rejected the request credentials",
        user_action="Provide a public or pre-signed source URL",
        patterns=(r"401", r"unauthori[sz]ed"),
    ),
    ErrorDefinition(
        "AUTH_FORBIDDEN", ErrorCategory.AUTH_ERROR,
        "Access to the source was denied",
        user_action="Check sharing permissions on the source",
        patterns=(r"403", r"forbidden"),
    ),
]

# One fallback per job-level category
for _category in list(STAGE_CATEGORIES.values()):
    _DEFINITIONS.append(
        ErrorDefinition(
            f"{_category.value.replace('_ERROR', '')}_UNKNOWN",
            _category,
            "Render failed",
            action=(
                RecoveryAction.RETRY
                if _category == ErrorCategory.NETWORK_ERROR
                else RecoveryAction.ABORT
            ),
            max_retries=3 if _category == ErrorCategory.NETWORK_ERROR else 0,
        )
    )

ERROR_CATALOG: Dict[str, ErrorDefinition] = {d.code: d for d in _DEFINITIONS}


def get_definition(code: str) -> ErrorDefinition:
    """Look up a code; unknown codes raise KeyError."""
    return ERROR_CATALOG[code]


def fallback_definition(category: ErrorCategory) -> ErrorDefinition:
    return ERROR_CATALOG[f"{category.value.replace('_ERROR', '')}_UNKNOWN"]


def match_definition(category: ErrorCategory, text: str) -> ErrorDefinition:
    """
    Pick the first catalog entry of a category whose patterns match text.

    Catalog order is significant: more specific codes are listed first.
    Falls back to the category's *_UNKNOWN entry.
    """
    for definition in _DEFINITIONS:
        if definition.category == category and definition.matches(text):
            return definition
    return fallback_definition(category)
