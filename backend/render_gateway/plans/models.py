"""
Execution Plan data models.

An Execution Plan is the declarative, timestamped description of one edit:
which source clips are placed where on the output timeline, which audio
layers are mixed underneath, which text is drawn on top, and what the
output file must look like.

Plans are immutable once submitted. Every model here is frozen and every
collection is a tuple, so a plan handed to the router, the compiler and
the worker is the same value for all three.

Structural rules (ordering, overlap, duration arithmetic) are enforced in
validation.py, not here, so that violations surface as PLAN_ERROR records
rather than generic request validation failures.
"""

from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# Named per-segment filters. Only these names are accepted; raw FFmpeg
# filter expressions are never taken from callers.
SEGMENT_FILTER_PRESETS: Dict[str, str] = {
    "grayscale": "hue=s=0",
    "sepia": "colorchannelmixer=.393:.769:.189:0:.349:.686:.168:0:.272:.534:.131",
    "blur": "boxblur=2:1",
    "sharpen": "unsharp=5:5:1.0:5:5:0.0",
    "hflip": "hflip",
    "vflip": "vflip",
    "denoise": "hqdn3d",
}

SUPPORTED_CONTAINERS = ("mp4", "webm", "mov")

PRIMARY_VIDEO_TRACK = "video"


class TextPosition(str, Enum):
    """Preset anchor for a text overlay when no explicit x/y is given."""

    TOP = "top"
    CENTER = "center"
    BOTTOM = "bottom"


class _PlanModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SourceReference(_PlanModel):
    """
    What is known about the primary source video.

    Width/height/container are optional: when the caller does not know
    them, capability extraction compares against the default output
    format instead.
    """

    video_id: str = "source"
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    container: Optional[str] = None
    duration_ms: Optional[int] = None


class OutputFormat(_PlanModel):
    container: str = "mp4"
    width: int = 1080
    height: int = 1920
    fps: float = 30
    video_bitrate_kbps: Optional[int] = None
    audio_bitrate_kbps: int = 128
    codec: str = "h264"  # hint: h264, h265, vp9
    crf: Optional[int] = None


DEFAULT_OUTPUT_FORMAT = OutputFormat()


class TimelineSegment(_PlanModel):
    """
    One trimmed, speed-adjusted instance of a source clip on the output timeline.

    Invariant (checked in validation):
        output_duration_ms == round((trim_end_ms - trim_start_ms) / speed_multiplier)
    """

    segment_id: str
    source_video_id: Optional[str] = None
    source_segment_id: Optional[str] = None
    asset_url: str = ""
    trim_start_ms: int
    trim_end_ms: int
    source_duration_ms: int
    timeline_start_ms: int
    timeline_end_ms: int
    output_duration_ms: int
    speed_multiplier: float = 1.0
    track: str = PRIMARY_VIDEO_TRACK
    layer: int = 0
    filters: Tuple[str, ...] = ()

    @property
    def is_trimmed(self) -> bool:
        return self.trim_start_ms > 0 or self.trim_end_ms < self.source_duration_ms


class AudioTrack(_PlanModel):
    """
    Independent audio layer.

    Tracks are always mixed together; a track never replaces another.
    trim_end_ms defaults to trim_start_ms + timeline span.
    """

    audio_id: str
    asset_url: str = ""
    trim_start_ms: int = 0
    trim_end_ms: Optional[int] = None
    timeline_start_ms: int = 0
    timeline_end_ms: int
    volume: float = 1.0
    fade_in_ms: int = 0
    fade_out_ms: int = 0
    track: str = "audio"
    speed_multiplier: float = 1.0

    @property
    def timeline_duration_ms(self) -> int:
        return self.timeline_end_ms - self.timeline_start_ms

    @property
    def effective_trim_end_ms(self) -> int:
        if self.trim_end_ms is not None:
            return self.trim_end_ms
        return self.trim_start_ms + round(self.timeline_duration_ms * self.speed_multiplier)


class TextOverlay(_PlanModel):
    text_id: str
    content: str
    timeline_start_ms: int
    timeline_end_ms: int
    font_file: Optional[str] = None
    font_size: int = 48
    color: str = "white"
    position: TextPosition = TextPosition.BOTTOM
    x: Optional[str] = None
    y: Optional[str] = None
    box: bool = False
    box_color: str = "black@0.5"
    box_border: int = 5


class PlanValidationSummary(_PlanModel):
    """Derived summary attached to a plan once it passes validation."""

    total_duration_ms: int
    segment_count: int
    audio_track_count: int
    text_overlay_count: int
    asset_count: int
    warnings: Tuple[str, ...] = ()


class ExecutionPlan(_PlanModel):
    plan_id: str
    source: Optional[SourceReference] = None
    output_format: OutputFormat = Field(default_factory=OutputFormat)
    timeline: Tuple[TimelineSegment, ...] = ()
    audio_tracks: Tuple[AudioTrack, ...] = ()
    text_overlays: Tuple[TextOverlay, ...] = ()
    validation: Optional[PlanValidationSummary] = None

    @property
    def base_track(self) -> Optional[str]:
        """
        Track whose layer-0 segments form the concatenated base video.

        "video" when any layer-0 segment uses it, else the first layer-0 segment's track.
        """
        bottom = [s.track for s in self.timeline if s.layer == 0]
        if PRIMARY_VIDEO_TRACK in bottom:
            return PRIMARY_VIDEO_TRACK
        return bottom[0] if bottom else None

    def _is_base(self, seg: TimelineSegment) -> bool:
        return seg.layer == 0 and seg.track == self.base_track

    @property
    def base_segments(self) -> List[TimelineSegment]:
        """Segments concatenated in timeline order to form the base video."""
        return [s for s in self.timeline if self._is_base(s)]

    @property
    def layered_segments(self) -> List[TimelineSegment]:
        """Segments composited on top of the base video, lowest layer first."""
        layered = [s for s in self.timeline if not self._is_base(s)]
        return sorted(layered, key=lambda s: (s.layer, s.timeline_start_ms))

    @property
    def total_duration_ms(self) -> int:
        if self.validation is not None:
            return self.validation.total_duration_ms
        return max((s.timeline_end_ms for s in self.timeline), default=0)

    def asset_urls(self) -> List[str]:
        """Unique asset references in first-use order (video segments, then audio)."""
        seen: List[str] = []
        refs: Iterable[str] = [s.asset_url for s in self.timeline] + [
            t.asset_url for t in self.audio_tracks
        ]
        for ref in refs:
            if ref and ref not in seen:
                seen.append(ref)
        return seen

    def bind_source(self, source_url: str) -> "ExecutionPlan":
        """
        Fill empty asset references with the request's source URL.

        Returns a new plan; this one is left untouched.
        """
        timeline = tuple(
            s if s.asset_url else s.model_copy(update={"asset_url": source_url})
            for s in self.timeline
        )
        tracks = tuple(
            t if t.asset_url else t.model_copy(update={"asset_url": source_url})
            for t in self.audio_tracks
        )
        source = self.source or SourceReference()
        if source.url is None:
            source = source.model_copy(update={"url": source_url})
        return self.model_copy(
            update={"timeline": timeline, "audio_tracks": tracks, "source": source}
        )

    def with_assets(self, mapping: Mapping[str, str]) -> "ExecutionPlan":
        """Return a copy whose asset references are replaced via mapping (e.g. URL -> local path)."""
        timeline = tuple(
            s.model_copy(update={"asset_url": mapping.get(s.asset_url, s.asset_url)})
            for s in self.timeline
        )
        tracks = tuple(
            t.model_copy(update={"asset_url": mapping.get(t.asset_url, t.asset_url)})
            for t in self.audio_tracks
        )
        return self.model_copy(update={"timeline": timeline, "audio_tracks": tracks})
