"""
FFmpeg progress parsing.

FFmpeg reports progress on stderr:
    frame=   24 fps= 12 q=28.0 size=       0kB time=00:00:01.00 bitrate=   0.0kbits/s speed=1.2x

time= is compared against the plan's total output duration. Percent is
capped at 99 while the encoder runs; only the worker's final transition
to done reports 100.
"""

import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

TIME_PATTERN = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})')
SPEED_PATTERN = re.compile(r'speed=\s*([\d.]+)x')

RUNNING_PROGRESS_CAP = 99


@dataclass
class ProgressInfo:
    """Progress of one running render."""

    job_id: str
    progress_pct: int = 0
    current_seconds: float = 0.0
    total_seconds: float = 0.0
    speed: Optional[float] = None
    eta_seconds: Optional[float] = None


class ProgressParser:
    """
    Parse FFmpeg stderr lines into ProgressInfo.

    Usage:
        parser = ProgressParser(job_id, total_seconds=12.5)
        for line in stderr:
            info = parser.parse_line(line)
    """

    def __init__(
        self,
        job_id: str,
        total_seconds: float,
        on_progress: Optional[Callable[[ProgressInfo], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self.total_seconds = total_seconds
        self.on_progress = on_progress
        self._clock = clock
        self._started = clock()
        self._info = ProgressInfo(job_id=job_id, total_seconds=total_seconds)
        self._speed_samples: deque = deque(maxlen=10)

    def parse_line(self, line: str) -> Optional[ProgressInfo]:
        """
        Returns:
            Updated ProgressInfo if the line carried a time= value, None otherwise
        """
        match = TIME_PATTERN.search(line)
        if not match:
            return None

        hours, minutes, seconds, centis = (int(g) for g in match.groups())
        current = hours * 3600 + minutes * 60 + seconds + centis / 100.0
        self._info.current_seconds = current

        if self.total_seconds > 0:
            pct = round(current / self.total_seconds * 100)
            self._info.progress_pct = max(self._info.progress_pct, min(RUNNING_PROGRESS_CAP, pct))

        speed_match = SPEED_PATTERN.search(line)
        if speed_match:
            speed = float(speed_match.group(1))
            if speed > 0:
                self._speed_samples.append(speed)
                self._info.speed = speed

        self._info.eta_seconds = self._estimate_eta()

        if self.on_progress:
            self.on_progress(self._info)
        return self._info

    def _estimate_eta(self) -> Optional[float]:
        remaining = self.total_seconds - self._info.current_seconds
        if self.total_seconds <= 0:
            return None
        if remaining <= 0:
            return 0.0
        if self._speed_samples:
            avg = sum(self._speed_samples) / len(self._speed_samples)
            return remaining / avg
        elapsed = self._clock() - self._started
        if elapsed <= 0 or self._info.current_seconds <= 0:
            return None
        return remaining * (elapsed / self._info.current_seconds)

    def get_progress(self) -> ProgressInfo:
        return self._info
