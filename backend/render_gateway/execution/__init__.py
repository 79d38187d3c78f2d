"""
Execution: compiling plans to FFmpeg commands and running them.

This package does not decide what to render or where; the router does.
It turns a validated plan into an argv, resolves the assets it names and
runs FFmpeg with a timeout.
"""

from .compiler import CompiledCommand, compile_plan
from .errors import (
    EncodeError,
    EncodeTimeoutError,
    ExecutionError,
    FFmpegNotFoundError,
)
from .ffmpeg import FFmpegInfo, FFmpegRunner, ProcessResult, detect_ffmpeg

__all__ = [
    # Compiler
    "CompiledCommand",
    "compile_plan",
    # Errors
    "ExecutionError",
    "EncodeError",
    "EncodeTimeoutError",
    "FFmpegNotFoundError",
    # FFmpeg
    "FFmpegInfo",
    "FFmpegRunner",
    "ProcessResult",
    "detect_ffmpeg",
]
