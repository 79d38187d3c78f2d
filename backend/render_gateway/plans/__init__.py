"""
Execution Plans: the timeline description every render starts from.

A plan is parsed with pydantic, then checked by validate_plan() before it
reaches the router or the compiler.
"""

from .models import (
    AudioTrack,
    ExecutionPlan,
    OutputFormat,
    SourceReference,
    TextOverlay,
    TimelineSegment,
)
from .transforms import MediaInfo, TransformOptions, build_transform_plan
from .validation import PlanValidationError, validate_plan, validated

__all__ = [
    # Models
    "AudioTrack",
    "ExecutionPlan",
    "OutputFormat",
    "SourceReference",
    "TextOverlay",
    "TimelineSegment",
    # Validation
    "PlanValidationError",
    "validate_plan",
    "validated",
    # Transforms
    "MediaInfo",
    "TransformOptions",
    "build_transform_plan",
]
