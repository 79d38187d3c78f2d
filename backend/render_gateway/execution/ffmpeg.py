"""
FFmpeg as an external collaborator.

Three concerns live here:
- discovery: locate the binary, read its version, list encoders
- probing: ffprobe a local source for duration/dimensions/audio
- running: spawn one encode, stream stderr line by line, wait,
  and kill it if it outlives its wall-clock ceiling

Codec logic is never reimplemented; everything goes through the binary.
"""

import json
import logging
import os
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from ..plans.transforms import MediaInfo

logger = logging.getLogger(__name__)

COMMON_FFMPEG_PATHS = [
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
]

# Preferred hardware H.264 encoders per FFMPEG_HW_ACCEL mode
HW_ENCODERS = {
    "cuda": ("h264_nvenc",),
    "videotoolbox": ("h264_videotoolbox",),
    "auto": ("h264_nvenc", "h264_videotoolbox"),
}

SOFTWARE_H264 = "libx264"

STDERR_TAIL_LINES = 200

# Grace period between terminate and kill
KILL_GRACE_SECONDS = 5

DETECT_TIMEOUT_SECONDS = 5


# =============================================================================
# Discovery
# =============================================================================

def find_ffmpeg(explicit_path: Optional[str] = None) -> Optional[str]:
    """
    Locate the FFmpeg binary.

    Order: explicit path, PATH lookup, common install locations.
    """
    if explicit_path:
        if os.path.isfile(explicit_path) and os.access(explicit_path, os.X_OK):
            return explicit_path
        logger.warning(f"[FFmpeg] FFMPEG_PATH={explicit_path} is not an executable file")
        return None

    found = shutil.which("ffmpeg")
    if found:
        return found

    for path in COMMON_FFMPEG_PATHS:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


def find_ffprobe(ffmpeg_path: Optional[str]) -> Optional[str]:
    """ffprobe next to ffmpeg, else on PATH."""
    if ffmpeg_path:
        sibling = os.path.join(os.path.dirname(ffmpeg_path), "ffprobe")
        if os.path.isfile(sibling) and os.access(sibling, os.X_OK):
            return sibling
    return shutil.which("ffprobe")


def _run_quick(argv: Sequence[str]) -> str:
    result = subprocess.run(
        list(argv), capture_output=True, text=True, timeout=DETECT_TIMEOUT_SECONDS
    )
    # FFmpeg writes banners to stderr even on success
    return result.stdout + result.stderr


@dataclass(frozen=True)
class FFmpegInfo:
    """What is known about the local FFmpeg installation."""

    path: Optional[str]
    version: Optional[str] = None
    encoders: tuple = ()

    @property
    def available(self) -> bool:
        return self.path is not None

    def to_dict(self) -> dict:
        return {"available": self.available, "path": self.path, "version": self.version}


def parse_version(output: str) -> Optional[str]:
    """'ffmpeg version 6.1.1-3ubuntu5 Copyright ...' -> '6.1.1-3ubuntu5'"""
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "ffmpeg" and parts[1] == "version":
            return parts[2]
    return None


def parse_encoders(output: str) -> List[str]:
    """
    Encoder names from `ffmpeg -encoders`.

    Lines look like ' V....D libx264   libx264 H.264 / AVC ...'; the legend
    above the ------ separator is skipped.
    """
    names: List[str] = []
    in_list = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("------"):
            in_list = True
            continue
        if not in_list or not stripped:
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            names.append(parts[1])
    return names


def detect_ffmpeg(explicit_path: Optional[str] = None) -> FFmpegInfo:
    """
    Locate FFmpeg and read its version and encoder list.

    Detection failures degrade to an FFmpegInfo with fewer fields; they
    never raise.
    """
    path = find_ffmpeg(explicit_path)
    if path is None:
        logger.warning("[FFmpeg] Not found; renders will fall back to plan export")
        return FFmpegInfo(path=None)

    version = None
    encoders: List[str] = []
    try:
        version = parse_version(_run_quick([path, "-version"]))
        encoders = parse_encoders(_run_quick([path, "-hide_banner", "-encoders"]))
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"[FFmpeg] Capability detection failed for {path}: {e}")

    logger.info(f"[FFmpeg] Using {path} (version {version or 'unknown'}, {len(encoders)} encoders)")
    return FFmpegInfo(path=path, version=version, encoders=tuple(encoders))


def select_video_encoder(info: FFmpegInfo, hw_accel: str) -> Optional[str]:
    """
    Pick a hardware H.264 encoder for FFMPEG_HW_ACCEL, or None for software.

    Args:
        info: Detected installation
        hw_accel: auto, cuda, videotoolbox or off
    """
    candidates = HW_ENCODERS.get(hw_accel.lower(), ())
    for encoder in candidates:
        if encoder in info.encoders:
            return encoder
    return None


# =============================================================================
# Probing
# =============================================================================

def probe_media(path: str, ffprobe_path: Optional[str]) -> Optional[MediaInfo]:
    """
    Probe a local media file with ffprobe.

    Returns:
        MediaInfo, or None when ffprobe is unavailable or cannot read the file
    """
    if not ffprobe_path:
        return None
    argv = [
        ffprobe_path, "-v", "error", "-print_format", "json",
        "-show_format", "-show_streams", path,
    ]
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"[FFmpeg] ffprobe failed for {path}: {e}")
        return None
    if result.returncode != 0:
        logger.warning(f"[FFmpeg] ffprobe exit {result.returncode} for {path}: {result.stderr.strip()}")
        return None

    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        logger.warning(f"[FFmpeg] ffprobe returned unparseable JSON for {path}: {e}")
        return None

    streams = data.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    duration = data.get("format", {}).get("duration")
    return MediaInfo(
        duration_ms=round(float(duration) * 1000) if duration else None,
        width=video.get("width") if video else None,
        height=video.get("height") if video else None,
        has_audio=any(s.get("codec_type") == "audio" for s in streams),
    )


# =============================================================================
# Running
# =============================================================================

@dataclass
class ProcessResult:
    exit_code: Optional[int]
    stderr_tail: str
    timed_out: bool = False
    elapsed_seconds: float = 0.0


@dataclass
class FFmpegRunner:
    """
    Spawns one FFmpeg process at a time and supervises it.

    The worker only ever calls run(); tests substitute any object with the
    same method.
    """

    tail_lines: int = STDERR_TAIL_LINES
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _process: Optional[subprocess.Popen] = field(default=None, init=False, repr=False)

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout_seconds: float,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """
        Run argv to completion or until timeout_seconds elapse.

        Args:
            argv: Full command (program first)
            timeout_seconds: Wall-clock ceiling; the process is killed past it
            on_line: Called with each stderr line (progress lines included)

        Returns:
            ProcessResult

        Raises:
            OSError: If the program cannot be spawned
        """
        logger.info(f"[FFmpeg] Executing: {' '.join(argv)}")
        started = time.monotonic()
        tail: deque = deque(maxlen=self.tail_lines)
        timed_out = threading.Event()

        process = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        with self._lock:
            self._process = process
        logger.info(f"[FFmpeg] Started PID {process.pid}")

        def _on_timeout() -> None:
            timed_out.set()
            logger.error(f"[FFmpeg] PID {process.pid} exceeded {timeout_seconds:.0f}s, killing")
            self._stop(process)

        timer = threading.Timer(timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()
        try:
            # Text mode splits FFmpeg's \r progress updates into lines too
            for line in process.stderr:
                line = line.rstrip("\n")
                if not line:
                    continue
                tail.append(line)
                if on_line is not None:
                    on_line(line)
            exit_code = process.wait()
        finally:
            timer.cancel()
            with self._lock:
                self._process = None

        elapsed = time.monotonic() - started
        logger.info(f"[FFmpeg] PID {process.pid} exited with code {exit_code} after {elapsed:.1f}s")
        return ProcessResult(
            exit_code=exit_code,
            stderr_tail="\n".join(tail),
            timed_out=timed_out.is_set(),
            elapsed_seconds=elapsed,
        )

    @staticmethod
    def _stop(process: subprocess.Popen) -> None:
        """SIGTERM, then SIGKILL if the process does not exit within the grace period."""
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()

    @property
    def active_pid(self) -> Optional[int]:
        with self._lock:
            return self._process.pid if self._process is not None else None
