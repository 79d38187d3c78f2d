"""
Shared fixtures for render gateway tests.

No test here needs a real FFmpeg unless marked `integration`: the render
worker is handed a FakeRunner that writes the output file and emits
FFmpeg-style stderr, and FFmpeg detection is replaced by a fixed
FFmpegInfo.

Jobs are processed synchronously with `drain` unless a test starts the
worker thread itself (TestClient used as a context manager does).
"""

import copy
from pathlib import Path
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from render_gateway.config import GatewaySettings
from render_gateway.execution.ffmpeg import FFmpegInfo, ProcessResult
from render_gateway.gateway import RenderGateway
from render_gateway.main import create_app


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: needs a real FFmpeg binary (skipped when absent)"
    )


FAKE_FFMPEG = FFmpegInfo(path="/usr/bin/ffmpeg", version="6.1.1", encoders=("libx264", "aac"))
NO_FFMPEG = FFmpegInfo(path=None)

PROGRESS_LINES = (
    "frame=   30 fps= 30 q=28.0 size=     256kB time=00:00:01.00 bitrate=2097.2kbits/s speed=2.00x",
    "frame=   60 fps= 30 q=28.0 size=     512kB time=00:00:02.00 bitrate=2097.2kbits/s speed=2.00x",
)


# =============================================================================
# Fake process runner
# =============================================================================

class FakeRunner:
    """
    Stand-in for FFmpegRunner.

    Each run() pops the next scripted outcome; with none left it succeeds.

    Outcomes:
        "ok"       write the output file, exit 0
        "empty"    write a 0-byte output file, exit 0
        "missing"  write nothing, exit 0
        "timeout"  report a killed process
        "oserror"  raise FileNotFoundError as if the binary vanished
        ("fail", stderr)  exit 1 with the given stderr
    """

    def __init__(self) -> None:
        self.outcomes: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def run(self, argv, *, timeout_seconds, on_line=None) -> ProcessResult:
        argv = list(argv)
        self.calls.append({"argv": argv, "timeout_seconds": timeout_seconds})
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        output = Path(argv[-1])

        if outcome == "oserror":
            raise FileNotFoundError(argv[0])

        lines = ["Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'source.mp4':", *PROGRESS_LINES]
        if isinstance(outcome, tuple):
            lines += outcome[1].splitlines()
        for line in lines:
            if on_line is not None:
                on_line(line)

        if outcome == "timeout":
            return ProcessResult(exit_code=-9, stderr_tail="\n".join(lines), timed_out=True)
        if isinstance(outcome, tuple):
            return ProcessResult(exit_code=1, stderr_tail="\n".join(lines))
        if outcome == "ok":
            output.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024)
        elif outcome == "empty":
            output.write_bytes(b"")
        return ProcessResult(exit_code=0, stderr_tail="\n".join(lines), elapsed_seconds=0.1)

    @property
    def argvs(self) -> List[List[str]]:
        return [call["argv"] for call in self.calls]


# =============================================================================
# Plans
# =============================================================================

_REFERENCE_PLAN: Dict[str, Any] = {
    "plan_id": "plan_reference",
    "output_format": {"container": "mp4", "width": 1080, "height": 1920, "fps": 30},
    "timeline": [
        {
            "segment_id": "seg_a",
            "trim_start_ms": 0,
            "trim_end_ms": 5000,
            "source_duration_ms": 10000,
            "timeline_start_ms": 0,
            "timeline_end_ms": 5000,
            "output_duration_ms": 5000,
        },
        {
            "segment_id": "seg_b",
            "trim_start_ms": 6000,
            "trim_end_ms": 8000,
            "source_duration_ms": 10000,
            "timeline_start_ms": 5000,
            "timeline_end_ms": 7000,
            "output_duration_ms": 2000,
        },
    ],
    "audio_tracks": [
        {"audio_id": "music", "timeline_start_ms": 0, "timeline_end_ms": 7000, "volume": 0.5},
    ],
    "text_overlays": [
        {"text_id": "title", "content": "Hello World", "timeline_start_ms": 500, "timeline_end_ms": 3000},
    ],
}


@pytest.fixture
def plan_dict() -> Dict[str, Any]:
    """
    Two video segments (5000ms + 2000ms), one audio track at volume 0.5,
    one "Hello World" overlay. Asset references are left empty so the
    request's source fills them.
    """
    return copy.deepcopy(_REFERENCE_PLAN)


def segment(
    segment_id: str,
    start_ms: int,
    duration_ms: int,
    *,
    trim_start_ms: int = 0,
    speed: float = 1.0,
    source_duration_ms: int = 60000,
    **extra: Any,
) -> Dict[str, Any]:
    """Timeline segment dict with consistent trim/output/timeline arithmetic."""
    trim_end_ms = trim_start_ms + round(duration_ms * speed)
    body = {
        "segment_id": segment_id,
        "trim_start_ms": trim_start_ms,
        "trim_end_ms": trim_end_ms,
        "source_duration_ms": source_duration_ms,
        "timeline_start_ms": start_ms,
        "timeline_end_ms": start_ms + duration_ms,
        "output_duration_ms": duration_ms,
        "speed_multiplier": speed,
    }
    body.update(extra)
    return body


@pytest.fixture
def make_segment():
    return segment


# =============================================================================
# Gateway
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return GatewaySettings(data_dir=tmp_path / "data", backoff_scale=0.0)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def build_gateway(settings: GatewaySettings, runner: FakeRunner, ffmpeg: FFmpegInfo = FAKE_FFMPEG, **kwargs):
    gateway = RenderGateway(settings, runner=runner, ffmpeg=ffmpeg, **kwargs)
    # Execute jobs must not depend on whether ffprobe happens to be installed
    gateway.ffprobe_path = None
    gateway.worker.ffprobe_path = None
    return gateway


@pytest.fixture
def gateway(settings, runner):
    gw = build_gateway(settings, runner)
    yield gw
    gw.stop(timeout=5)


@pytest.fixture
def source_file(gateway) -> str:
    """A non-empty 'video' inside the uploads directory (absolute path)."""
    path = gateway.settings.uploads_dir / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 4096)
    return str(path)


def drain(gateway: RenderGateway) -> List[str]:
    """Process every queued job on the calling thread, in FIFO order."""
    processed = []
    while True:
        job_id = gateway.queue.take(timeout=0)
        if job_id is None:
            return processed
        try:
            gateway.worker.process(job_id)
        finally:
            gateway.queue.release(job_id)
        processed.append(job_id)


@pytest.fixture
def run_jobs(gateway):
    return lambda: drain(gateway)


@pytest.fixture
def client(gateway):
    """TestClient without lifespan: the worker thread is NOT started; use run_jobs."""
    return TestClient(create_app(gateway=gateway))


def job_status(client: TestClient, job_id: str) -> Dict[str, Any]:
    response = client.get(f"/api/jobs/{job_id}")
    assert response.status_code == 200, response.text
    return response.json()


def find_job_errors(gateway: RenderGateway, job_id: str) -> List[Dict[str, Any]]:
    return [r.to_api() for r in gateway.error_store.for_job(job_id)]
