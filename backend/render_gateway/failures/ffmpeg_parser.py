"""
FFmpeg stderr classification.

Reduces an encoder's stderr to a catalog code so a failed render is
reported with a stable category instead of raw process output.
Order of checks matters: the first matching rule wins.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .catalog import ErrorCategory, ErrorDefinition, get_definition


# (needles, code): any needle present in lowercased stderr selects the code
_STDERR_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("unknown encoder", "unknown decoder", "codec not found", "unknown codec"), "FFMPEG_CODEC_ERROR"),
    (("error initializing filter", "error initializing complex filter", "no such filter",
      "error reinitializing filters", "invalid stream specifier", "filter not found"), "FFMPEG_FILTER_ERROR"),
    (("invalid data found", "moov atom not found", "invalid file"), "INPUT_FILE_CORRUPTED"),
    (("no such file or directory",), "INPUT_FILE_NOT_FOUND"),
    (("no space left", "disk full"), "STORAGE_DISK_FULL"),
    (("permission denied", "access denied", "read-only file system"), "STORAGE_WRITE_FAILED"),
)


@dataclass(frozen=True)
class ParsedFFmpegError:
    definition: ErrorDefinition
    detail: str

    @property
    def category(self) -> ErrorCategory:
        return self.definition.category

    @property
    def code(self) -> str:
        return self.definition.code


def last_error_line(stderr: str) -> str:
    """
    Return the last stderr line that mentions error/failed/invalid.

    Falls back to the last non-empty line.
    """
    lines = [line.strip() for line in (stderr or "").splitlines() if line.strip()]
    for line in reversed(lines):
        lowered = line.lower()
        if "error" in lowered or "failed" in lowered or "invalid" in lowered:
            return line
    return lines[-1] if lines else "FFmpeg exited without output"


def parse_ffmpeg_stderr(stderr: Optional[str]) -> ParsedFFmpegError:
    """
    Classify FFmpeg stderr.

    Args:
        stderr: Captured stderr (may be a tail)

    Returns:
        ParsedFFmpegError; FFMPEG_ENCODING_FAILED when nothing specific matches
    """
    if not stderr:
        return ParsedFFmpegError(get_definition("FFMPEG_ENCODING_FAILED"), "FFmpeg exited without output")

    lowered = stderr.lower()
    for needles, code in _STDERR_RULES:
        if any(needle in lowered for needle in needles):
            return ParsedFFmpegError(get_definition(code), last_error_line(stderr))

    # "Invalid argument" alone is too common; only filter lines count
    for line in lowered.splitlines():
        if "invalid argument" in line and "filter" in line:
            return ParsedFFmpegError(get_definition("FFMPEG_FILTER_ERROR"), last_error_line(stderr))

    return ParsedFFmpegError(get_definition("FFMPEG_ENCODING_FAILED"), last_error_line(stderr))
