"""
Simple transform requests -> implicit single-segment plans.

/api/execute accepts a handful of whitelisted options instead of a full
Execution Plan. They are clamped to safe ranges and turned into a plan
with one timeline segment (and, unless muted, one audio track that
re-uses the source's own audio), so the same router and compiler serve
both endpoints.
"""

import os
from typing import List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from ..failures.catalog import Stage
from .models import (
    SEGMENT_FILTER_PRESETS,
    AudioTrack,
    ExecutionPlan,
    OutputFormat,
    SourceReference,
    TimelineSegment,
)
from .validation import PlanValidationError

SPEED_RANGE = (0.25, 4.0)
DIMENSION_RANGE = (100, 4096)
VOLUME_RANGE = (0.0, 2.0)

QUALITY_CRF = {
    "low": 28,
    "medium": 23,
    "high": 18,
    "lossless": 0,
}

FORMAT_CODEC = {
    "mp4": "h264",
    "mov": "h264",
    "webm": "vp9",
}


def _clamp(value: float, bounds: tuple) -> float:
    low, high = bounds
    return max(low, min(high, value))


def _even(value: int) -> int:
    # yuv420p encoders need even dimensions
    return value - (value % 2)


class _Options(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TrimOptions(_Options):
    start: float = 0.0  # seconds
    end: Optional[float] = None  # seconds


class ResizeOptions(_Options):
    width: int
    height: int


class AudioOptions(_Options):
    volume: float = 1.0
    fade_in: float = Field(0.0, alias="fadeIn")  # seconds
    fade_out: float = Field(0.0, alias="fadeOut")  # seconds
    mute: bool = False


class TransformOptions(_Options):
    trim: Optional[TrimOptions] = None
    speed: Optional[float] = None
    resize: Optional[ResizeOptions] = None
    filters: List[str] = Field(default_factory=list)
    audio: Optional[AudioOptions] = None
    format: Literal["mp4", "webm", "mov"] = "mp4"
    quality: Literal["low", "medium", "high", "lossless"] = "medium"

    def check(self) -> None:
        """
        Reject options that cannot be clamped into something meaningful.

        Raises:
            PlanValidationError: INPUT_ERROR for the offending field
        """
        for name in self.filters:
            if name not in SEGMENT_FILTER_PRESETS:
                raise PlanValidationError(
                    f"Unknown filter '{name}'. Allowed: {', '.join(sorted(SEGMENT_FILTER_PRESETS))}",
                    code="INPUT_INVALID_FORMAT", stage=Stage.VALIDATION, field="filters",
                )
        if self.trim is not None:
            if self.trim.start < 0:
                raise PlanValidationError(
                    "trim.start must not be negative",
                    code="INPUT_MISSING_FIELD", stage=Stage.VALIDATION, field="trim.start",
                )
            if self.trim.end is not None and self.trim.end <= self.trim.start:
                raise PlanValidationError(
                    "trim.end must be greater than trim.start",
                    code="INPUT_MISSING_FIELD", stage=Stage.VALIDATION, field="trim.end",
                )


class MediaInfo(BaseModel):
    """What a probe of the source revealed. Any field may be unknown."""

    duration_ms: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    has_audio: Optional[bool] = None


def _container_of(source_url: str) -> Optional[str]:
    ext = os.path.splitext(urlparse(source_url).path)[1].lower().lstrip(".")
    return ext or None


def build_transform_plan(
    plan_id: str,
    source_url: str,
    options: TransformOptions,
    media: Optional[MediaInfo] = None,
) -> ExecutionPlan:
    """
    Build the implicit single-segment plan for an /api/execute request.

    Args:
        plan_id: Identifier for the implicit plan (the job id)
        source_url: Local path or URL of the source video
        options: Transform options from the request
        media: Probe result for the source, if available

    Returns:
        ExecutionPlan with one segment

    Raises:
        PlanValidationError: If the source duration is unknown and no trim.end was given
    """
    options.check()
    media = media or MediaInfo()

    trim_start_ms = round((options.trim.start if options.trim else 0.0) * 1000)
    trim_end_ms: Optional[int] = None
    if options.trim is not None and options.trim.end is not None:
        trim_end_ms = round(options.trim.end * 1000)
        if media.duration_ms:
            trim_end_ms = min(trim_end_ms, media.duration_ms)
    elif media.duration_ms:
        trim_end_ms = media.duration_ms
    if trim_end_ms is None:
        raise PlanValidationError(
            "Source duration could not be determined; provide trim.end",
            code="INPUT_MISSING_FIELD", stage=Stage.VALIDATION, field="trim.end",
        )
    if trim_end_ms <= trim_start_ms:
        raise PlanValidationError(
            "trim.start is beyond the end of the source",
            code="INPUT_MISSING_FIELD", stage=Stage.VALIDATION, field="trim.start",
        )
    source_duration_ms = media.duration_ms or trim_end_ms

    speed = _clamp(options.speed, SPEED_RANGE) if options.speed is not None else 1.0
    output_duration_ms = round((trim_end_ms - trim_start_ms) / speed)

    if options.resize is not None:
        width = _even(int(_clamp(options.resize.width, DIMENSION_RANGE)))
        height = _even(int(_clamp(options.resize.height, DIMENSION_RANGE)))
    elif media.width and media.height:
        width, height = _even(media.width), _even(media.height)
    else:
        defaults = OutputFormat()
        width, height = defaults.width, defaults.height

    output_format = OutputFormat(
        container=options.format,
        width=width,
        height=height,
        codec=FORMAT_CODEC[options.format],
        crf=QUALITY_CRF[options.quality],
    )

    segment = TimelineSegment(
        segment_id="seg_0",
        source_video_id="source",
        asset_url=source_url,
        trim_start_ms=trim_start_ms,
        trim_end_ms=trim_end_ms,
        source_duration_ms=source_duration_ms,
        timeline_start_ms=0,
        timeline_end_ms=output_duration_ms,
        output_duration_ms=output_duration_ms,
        speed_multiplier=speed,
        filters=tuple(options.filters),
    )

    tracks = []
    audio = options.audio or AudioOptions()
    if not audio.mute and media.has_audio is not False:
        fade_in_ms = max(0, round(audio.fade_in * 1000))
        fade_out_ms = max(0, round(audio.fade_out * 1000))
        if fade_in_ms + fade_out_ms > output_duration_ms:
            fade_in_ms = min(fade_in_ms, output_duration_ms // 2)
            fade_out_ms = min(fade_out_ms, output_duration_ms - fade_in_ms)
        tracks.append(
            AudioTrack(
                audio_id="source_audio",
                asset_url=source_url,
                trim_start_ms=trim_start_ms,
                trim_end_ms=trim_end_ms,
                timeline_start_ms=0,
                timeline_end_ms=output_duration_ms,
                volume=_clamp(audio.volume, VOLUME_RANGE),
                fade_in_ms=fade_in_ms,
                fade_out_ms=fade_out_ms,
                speed_multiplier=speed,
            )
        )

    return ExecutionPlan(
        plan_id=plan_id,
        source=SourceReference(
            video_id="source",
            url=source_url,
            width=media.width,
            height=media.height,
            container=_container_of(source_url),
            duration_ms=media.duration_ms,
        ),
        output_format=output_format,
        timeline=(segment,),
        audio_tracks=tuple(tracks),
    )
