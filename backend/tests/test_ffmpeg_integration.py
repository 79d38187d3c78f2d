"""
End-to-end renders with a real FFmpeg binary.

Skipped when ffmpeg is not installed. The source clip is generated with
FFmpeg's lavfi test sources so no media fixtures are needed.
"""

import shutil
import subprocess

import pytest

from conftest import drain
from render_gateway.execution.compiler import escape_drawtext
from render_gateway.execution.ffmpeg import FFmpegRunner, detect_ffmpeg
from render_gateway.gateway import RenderGateway
from render_gateway.jobs.models import JobStatus
from render_gateway.plans.transforms import TransformOptions

FFMPEG = shutil.which("ffmpeg")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(FFMPEG is None, reason="ffmpeg not installed"),
]


@pytest.fixture
def real_gateway(settings):
    gateway = RenderGateway(settings, runner=FFmpegRunner(), ffmpeg=detect_ffmpeg())
    # Software encoding keeps the render host-independent
    gateway.worker.hw_encoder = None
    yield gateway
    gateway.stop(timeout=30)


@pytest.fixture
def test_clip(real_gateway):
    path = real_gateway.settings.uploads_dir / "bars.mp4"
    subprocess.run(
        [
            FFMPEG, "-hide_banner", "-y",
            "-f", "lavfi", "-i", "testsrc=duration=10:size=320x240:rate=30",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=10",
            "-c:v", "libx264", "-pix_fmt", "yuv420p", "-c:a", "aac", "-shortest",
            str(path),
        ],
        check=True,
        capture_output=True,
        timeout=120,
    )
    return str(path)


def test_reference_plan_renders(real_gateway, test_clip, plan_dict):
    plan_dict["output_format"].update({"width": 320, "height": 240})
    # drawtext needs an FFmpeg built with freetype
    plan_dict["text_overlays"] = []
    job = real_gateway.submit_plan(test_clip, plan_dict)
    drain(real_gateway)
    job = real_gateway.get_job(job.id)

    assert job.status == JobStatus.DONE, job.logs_tail
    assert job.output_size > 0

    duration = subprocess.run(
        [FFMPEG.replace("ffmpeg", "ffprobe"), "-v", "error", "-show_entries", "format=duration",
         "-of", "default=nw=1:nk=1", job.output_path],
        capture_output=True, text=True,
    )
    if duration.returncode == 0:
        assert abs(float(duration.stdout.strip()) - 7.0) < 0.5


@pytest.mark.parametrize("content", ["Don't miss out", "50% off: it's 'quoted'"])
def test_escaped_text_survives_graph_parsing(content):
    # metadata shares the graph and option tokenizer with drawtext and
    # needs no freetype
    graph = f"[0:v]metadata=mode=add:key=caption:value='{escape_drawtext(content)}',metadata=mode=print[v]"
    result = subprocess.run(
        [
            FFMPEG, "-hide_banner",
            "-f", "lavfi", "-i", "color=c=black:s=64x64:d=0.1",
            "-filter_complex", graph, "-map", "[v]", "-f", "null", "-",
        ],
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
    assert "Filter not found" not in result.stderr
    assert "caption=" in result.stderr


def test_transform_job_renders(real_gateway, test_clip):
    options = TransformOptions.model_validate(
        {"trim": {"start": 1, "end": 3}, "speed": 2, "resize": {"width": 160, "height": 120}}
    )
    job = real_gateway.submit_execute(test_clip, options)
    drain(real_gateway)
    job = real_gateway.get_job(job.id)

    assert job.status == JobStatus.DONE, job.logs_tail
    assert job.output_url.endswith(".mp4")
