"""
Structural validation for Execution Plans.

A plan must pass validate_plan() before it reaches the router or the
compiler. The compiler assumes every invariant checked here and never
re-checks, so a bad plan is rejected up front instead of being discovered
halfway through building a filter graph.
"""

import re
from collections import defaultdict
from typing import Dict, List, Optional

from ..failures.catalog import ErrorCategory, STAGE_CATEGORIES, Stage
from .models import (
    SEGMENT_FILTER_PRESETS,
    SUPPORTED_CONTAINERS,
    ExecutionPlan,
    PlanValidationSummary,
    TimelineSegment,
)

# Tolerance for output_duration_ms rounding checks
DURATION_TOLERANCE_MS = 1

MAX_OUTPUT_DIMENSION = 8192

# drawtext position expressions and colors are inlined into the filter graph
_POSITION_EXPR = re.compile(r"^[A-Za-z0-9_+\-*/(). ]+$")
_COLOR_VALUE = re.compile(r"^[A-Za-z0-9#@.]+$")


class PlanValidationError(Exception):
    """
    Raised when a plan (or the request that produced it) is structurally invalid.

    Attributes:
        code: Catalog error code
        stage: VALIDATION for request-level problems (INPUT_ERROR),
               PLAN_VALIDATION for plan structure (PLAN_ERROR)
        field: Dotted path of the offending field, when known
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "PLAN_INVALID_STRUCTURE",
        stage: Stage = Stage.PLAN_VALIDATION,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.field = field

    @property
    def category(self) -> ErrorCategory:
        return STAGE_CATEGORIES[self.stage]

    def to_details(self) -> Dict[str, object]:
        details: Dict[str, object] = {"errorCode": self.code, "stage": self.stage.value}
        if self.field:
            details["field"] = self.field
        return details


def _timing(message: str, field: str) -> PlanValidationError:
    return PlanValidationError(message, code="PLAN_INVALID_TIMING", field=field)


def _check_segment(index: int, seg: TimelineSegment) -> None:
    where = f"timeline[{index}]"
    if not seg.asset_url:
        raise PlanValidationError(
            f"Segment {seg.segment_id} has no asset reference (dangling)",
            code="PLAN_DANGLING_REFERENCE",
            field=f"{where}.asset_url",
        )
    if seg.trim_start_ms < 0 or seg.timeline_start_ms < 0:
        raise _timing(f"Segment {seg.segment_id} has a negative start time", where)
    if seg.trim_end_ms <= seg.trim_start_ms:
        raise _timing(
            f"Segment {seg.segment_id} trim_end_ms must be greater than trim_start_ms", where
        )
    if seg.source_duration_ms > 0 and seg.trim_end_ms > seg.source_duration_ms:
        raise _timing(
            f"Segment {seg.segment_id} trim_end_ms exceeds source duration "
            f"({seg.trim_end_ms} > {seg.source_duration_ms})",
            where,
        )
    if seg.speed_multiplier <= 0:
        raise _timing(f"Segment {seg.segment_id} speed_multiplier must be positive", where)

    expected = round((seg.trim_end_ms - seg.trim_start_ms) / seg.speed_multiplier)
    if abs(seg.output_duration_ms - expected) > DURATION_TOLERANCE_MS:
        raise _timing(
            f"Segment {seg.segment_id} output_duration_ms is {seg.output_duration_ms}, "
            f"expected {expected} for its trim and speed",
            f"{where}.output_duration_ms",
        )
    span = seg.timeline_end_ms - seg.timeline_start_ms
    if abs(span - seg.output_duration_ms) > DURATION_TOLERANCE_MS:
        raise _timing(
            f"Segment {seg.segment_id} timeline span {span}ms does not match "
            f"output duration {seg.output_duration_ms}ms",
            where,
        )
    for name in seg.filters:
        if name not in SEGMENT_FILTER_PRESETS:
            raise PlanValidationError(
                f"Unknown filter '{name}' on segment {seg.segment_id}",
                field=f"{where}.filters",
            )


def _check_overlaps(plan: ExecutionPlan) -> None:
    by_lane: Dict[tuple, List[TimelineSegment]] = defaultdict(list)
    for seg in plan.timeline:
        by_lane[(seg.track, seg.layer)].append(seg)

    for (track, layer), segments in by_lane.items():
        ordered = sorted(segments, key=lambda s: s.timeline_start_ms)
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.timeline_start_ms < prev.timeline_end_ms:
                raise _timing(
                    f"Segments {prev.segment_id} and {cur.segment_id} overlap "
                    f"on track '{track}' layer {layer}",
                    "timeline",
                )


def validate_plan(plan: ExecutionPlan) -> PlanValidationSummary:
    """
    Check every structural invariant of a plan.

    Args:
        plan: Plan to check (asset references already bound)

    Returns:
        Derived PlanValidationSummary

    Raises:
        PlanValidationError: On the first violation found
    """
    if not plan.plan_id:
        raise PlanValidationError(
            "plan_id is required", code="INPUT_MISSING_FIELD",
            stage=Stage.VALIDATION, field="plan_id",
        )

    fmt = plan.output_format
    if fmt.container not in SUPPORTED_CONTAINERS:
        raise PlanValidationError(
            f"Unsupported output container '{fmt.container}'",
            code="INPUT_INVALID_FORMAT", stage=Stage.VALIDATION,
            field="output_format.container",
        )
    for dim_name, dim in (("width", fmt.width), ("height", fmt.height)):
        if dim <= 0 or dim > MAX_OUTPUT_DIMENSION:
            raise PlanValidationError(
                f"output_format.{dim_name} must be between 1 and {MAX_OUTPUT_DIMENSION}",
                field=f"output_format.{dim_name}",
            )
    if fmt.fps <= 0:
        raise PlanValidationError("output_format.fps must be positive", field="output_format.fps")

    if not plan.timeline:
        raise PlanValidationError("Execution plan has no timeline segments", field="timeline")

    ids = [s.segment_id for s in plan.timeline]
    if len(set(ids)) != len(ids):
        raise PlanValidationError("Duplicate segment_id in timeline", field="timeline")

    starts = [s.timeline_start_ms for s in plan.timeline]
    if starts != sorted(starts):
        raise PlanValidationError(
            "Timeline must be ordered by timeline_start_ms", field="timeline"
        )

    for index, seg in enumerate(plan.timeline):
        _check_segment(index, seg)

    if not plan.base_segments:
        raise PlanValidationError(
            "Execution plan needs at least one segment on layer 0", field="timeline"
        )
    _check_overlaps(plan)

    for index, track in enumerate(plan.audio_tracks):
        where = f"audio_tracks[{index}]"
        if not track.asset_url:
            raise PlanValidationError(
                f"Audio track {track.audio_id} has no asset reference (dangling)",
                code="PLAN_DANGLING_REFERENCE", field=f"{where}.asset_url",
            )
        if not 0 <= track.volume <= 2:
            raise PlanValidationError(
                f"Audio track {track.audio_id} volume must be between 0 and 2",
                field=f"{where}.volume",
            )
        if track.timeline_start_ms < 0 or track.trim_start_ms < 0:
            raise _timing(f"Audio track {track.audio_id} has a negative start time", where)
        if track.timeline_duration_ms <= 0:
            raise _timing(f"Audio track {track.audio_id} has a non-positive duration", where)
        if track.effective_trim_end_ms <= track.trim_start_ms:
            raise _timing(f"Audio track {track.audio_id} trim_end_ms must exceed trim_start_ms", where)
        if track.speed_multiplier <= 0:
            raise _timing(f"Audio track {track.audio_id} speed_multiplier must be positive", where)
        if track.fade_in_ms < 0 or track.fade_out_ms < 0:
            raise _timing(f"Audio track {track.audio_id} fade must not be negative", where)
        if track.fade_in_ms + track.fade_out_ms > track.timeline_duration_ms:
            raise _timing(f"Audio track {track.audio_id} fades are longer than the track", where)

    for index, overlay in enumerate(plan.text_overlays):
        where = f"text_overlays[{index}]"
        if not overlay.content:
            raise PlanValidationError(
                f"Text overlay {overlay.text_id} has no content", field=f"{where}.content"
            )
        if overlay.timeline_start_ms < 0 or overlay.timeline_end_ms <= overlay.timeline_start_ms:
            raise _timing(f"Text overlay {overlay.text_id} has an empty or negative window", where)
        if overlay.font_size <= 0:
            raise PlanValidationError(
                f"Text overlay {overlay.text_id} font_size must be positive",
                field=f"{where}.font_size",
            )
        for attr in ("x", "y"):
            expr = getattr(overlay, attr)
            if expr is not None and not _POSITION_EXPR.match(expr):
                raise PlanValidationError(
                    f"Text overlay {overlay.text_id} has an unsupported {attr} expression",
                    field=f"{where}.{attr}",
                )
        for attr in ("color", "box_color"):
            if not _COLOR_VALUE.match(getattr(overlay, attr)):
                raise PlanValidationError(
                    f"Text overlay {overlay.text_id} has an unsupported {attr}",
                    field=f"{where}.{attr}",
                )

    total = max(s.timeline_end_ms for s in plan.timeline)
    warnings = []
    for track in plan.audio_tracks:
        if track.timeline_end_ms > total:
            warnings.append(f"Audio track {track.audio_id} runs past the end of video and is cut")
    for overlay in plan.text_overlays:
        if overlay.timeline_start_ms >= total:
            warnings.append(f"Text overlay {overlay.text_id} starts after the video ends")

    return PlanValidationSummary(
        total_duration_ms=total,
        segment_count=len(plan.timeline),
        audio_track_count=len(plan.audio_tracks),
        text_overlay_count=len(plan.text_overlays),
        asset_count=len(plan.asset_urls()),
        warnings=tuple(warnings),
    )


def validated(plan: ExecutionPlan) -> ExecutionPlan:
    """Validate and return a copy of the plan carrying its derived summary."""
    summary = validate_plan(plan)
    return plan.model_copy(update={"validation": summary})
