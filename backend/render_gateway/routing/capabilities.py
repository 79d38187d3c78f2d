"""
Capability extraction.

Derives the processing features an Execution Plan needs from its shape.
Pure functions: same plan in, same set out.
"""

from enum import Enum
from typing import Dict, FrozenSet

from ..plans.models import DEFAULT_OUTPUT_FORMAT, ExecutionPlan


class Capability(str, Enum):
    """A named processing feature a plan may require."""

    TRIM = "trim"
    SPEED_CHANGE = "speed_change"
    RESIZE = "resize"
    FORMAT_CONVERT = "format_convert"
    SEGMENT_REPLACE = "segment_replace"
    AUDIO_MUX = "audio_mux"
    AUDIO_FADE = "audio_fade"
    ADVANCED_FILTERS = "advanced_filters"
    OVERLAY = "overlay"
    TRANSITION = "transition"
    TEXT_OVERLAY = "text_overlay"


ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)


def explain_capabilities(plan: ExecutionPlan) -> Dict[Capability, str]:
    """
    Required capabilities with the reason each one was derived.

    Overlapping segments on different tracks need OVERLAY; overlapping
    segments on the same track (necessarily on different layers) need
    TRANSITION.
    """
    reasons: Dict[Capability, str] = {}

    for seg in plan.timeline:
        if seg.is_trimmed:
            reasons.setdefault(Capability.TRIM, f"Segment {seg.segment_id} is trimmed")
        if seg.speed_multiplier != 1:
            reasons.setdefault(
                Capability.SPEED_CHANGE, f"Segment {seg.segment_id} plays at {seg.speed_multiplier}x"
            )
        if seg.filters:
            reasons.setdefault(
                Capability.ADVANCED_FILTERS, f"Segment {seg.segment_id} filters: {', '.join(seg.filters)}"
            )

    if len(plan.timeline) > 1:
        reasons[Capability.SEGMENT_REPLACE] = f"{len(plan.timeline)} timeline segments"

    segments = list(plan.timeline)
    for i, a in enumerate(segments):
        for b in segments[i + 1:]:
            if a.layer == b.layer:
                continue
            if a.timeline_start_ms < b.timeline_end_ms and b.timeline_start_ms < a.timeline_end_ms:
                if a.track == b.track:
                    reasons.setdefault(
                        Capability.TRANSITION,
                        f"Segments {a.segment_id}/{b.segment_id} overlap on track '{a.track}'",
                    )
                else:
                    reasons.setdefault(
                        Capability.OVERLAY,
                        f"Segment {b.segment_id} is layered over {a.segment_id}",
                    )

    fmt = plan.output_format
    source = plan.source
    src_w = source.width if source and source.width else DEFAULT_OUTPUT_FORMAT.width
    src_h = source.height if source and source.height else DEFAULT_OUTPUT_FORMAT.height
    if (fmt.width, fmt.height) != (src_w, src_h):
        reasons[Capability.RESIZE] = f"Output resolution {fmt.width}x{fmt.height} (source {src_w}x{src_h})"

    src_container = (source.container if source and source.container else DEFAULT_OUTPUT_FORMAT.container)
    if fmt.container != src_container.lower():
        reasons[Capability.FORMAT_CONVERT] = f"Output container {fmt.container} (source {src_container})"

    if plan.audio_tracks:
        reasons[Capability.AUDIO_MUX] = f"{len(plan.audio_tracks)} audio track(s)"
        if any(t.fade_in_ms > 0 or t.fade_out_ms > 0 for t in plan.audio_tracks):
            reasons[Capability.AUDIO_FADE] = "Audio fade effects"

    if plan.text_overlays:
        reasons[Capability.TEXT_OVERLAY] = f"{len(plan.text_overlays)} text overlay(s)"

    return reasons


def required_capabilities(plan: ExecutionPlan) -> FrozenSet[Capability]:
    return frozenset(explain_capabilities(plan))
