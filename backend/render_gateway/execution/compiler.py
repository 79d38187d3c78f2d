"""
Plan compiler.

Turns a validated ExecutionPlan into an FFmpeg invocation built around a
single -filter_complex graph:

    per-segment chains   [i:v]trim,setpts,fps,scale,pad,setsar      -> [vN]
    gap fillers          color=black (only where the base layer has holes)
    concat               [v0][v1]...concat=n=N:v=1:a=0              -> [vout]
    layers               [..][ovK]overlay=...:enable=window
    text                 drawtext=...:enable=window                  (one per overlay)
    audio                [i:a]atrim,asetpts,volume,afade,adelay      -> [aJ]
                         [a0][a1]...amix                             -> [aout]
                         anullsrc (when the plan declares no audio)  -> [aout]

compile_plan() is pure: it never touches the filesystem or the clock and
its output depends only on its arguments. Compiling the same plan twice
yields identical argument lists.

Audio embedded in video segments is never used. Only declared audio
tracks reach the output.
"""

import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..plans.models import (
    SEGMENT_FILTER_PRESETS,
    AudioTrack,
    ExecutionPlan,
    OutputFormat,
    TextOverlay,
    TextPosition,
    TimelineSegment,
)
from ..routing.engines import EngineId
from .errors import UnsupportedEngineError

# Base-layer holes shorter than this are ignored
GAP_TOLERANCE_MS = 1

SILENT_SAMPLE_RATE = 48000

# codec hint -> software encoder
VIDEO_ENCODERS: Dict[str, str] = {
    "h264": "libx264",
    "avc": "libx264",
    "h265": "libx265",
    "hevc": "libx265",
    "vp9": "libvpx-vp9",
}

DEFAULT_CRF: Dict[str, int] = {
    "libx264": 23,
    "libx265": 28,
    "libvpx-vp9": 32,
}

X264_PRESET = "fast"

# Fallback bitrate for hardware encoders when the plan does not set one
HW_DEFAULT_BITRATE_KBPS = 8000

_TEXT_X = "(w-text_w)/2"
_TEXT_Y: Dict[TextPosition, str] = {
    TextPosition.TOP: "h*0.1",
    TextPosition.CENTER: "(h-text_h)/2",
    TextPosition.BOTTOM: "h-text_h-h*0.1",
}


@dataclass(frozen=True)
class CompiledCommand:
    """
    Executable form of a plan.

    Attributes:
        command: Program to run
        args: Arguments, not including the program
        filter_graph: The -filter_complex value (also present in args)
        output_path: Target file
    """

    command: str
    args: Tuple[str, ...]
    filter_graph: str
    output_path: str

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def to_shell(self) -> str:
        return shlex.join(self.argv)

    def to_dict(self) -> Dict[str, object]:
        return {"command": self.command, "args": list(self.args), "shell": self.to_shell()}


# =============================================================================
# Formatting helpers
# =============================================================================

def _seconds(ms: int) -> str:
    """Milliseconds as a compact decimal seconds string (5000 -> '5', 1500 -> '1.5')."""
    text = f"{ms / 1000:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def _number(value: float) -> str:
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


# A quote cannot appear inside '...' in a filter graph: close the quote,
# emit an escaped quote that survives both graph and option parsing, reopen.
_QUOTE = "'\\\\\\''"


def escape_drawtext(value: str) -> str:
    """
    Escape text for a single-quoted drawtext option value.

    The text is unescaped three times: by the graph parser (quotes only),
    by the filter option parser and by drawtext's own expansion, where a
    bare "%" or backslash is significant.
    """
    return (
        value.replace("\\", "\\\\\\\\")
        .replace("%", "\\\\%")
        .replace(":", "\\:")
        .replace("'", _QUOTE)
    )


def _escape_filter_path(path: str) -> str:
    return path.replace("\\", "/").replace(":", "\\:").replace("'", _QUOTE)


def _window(start_ms: int, end_ms: int) -> str:
    # half-open [start, end)
    return f"enable='gte(t,{_seconds(start_ms)})*lt(t,{_seconds(end_ms)})'"


def _atempo_chain(speed: float) -> List[str]:
    """Split a tempo factor into atempo stages each within 0.5..2.0."""
    stages: List[str] = []
    remaining = speed
    while remaining > 2.0:
        stages.append("atempo=2")
        remaining /= 2.0
    while remaining < 0.5:
        stages.append("atempo=0.5")
        remaining /= 0.5
    if abs(remaining - 1.0) > 1e-9:
        stages.append(f"atempo={_number(remaining)}")
    return stages


# =============================================================================
# Graph pieces
# =============================================================================

class _GraphBuilder:
    """Accumulates inputs and filter statements for one compile call."""

    def __init__(self, plan: ExecutionPlan):
        self.plan = plan
        self.fmt: OutputFormat = plan.output_format
        self.inputs: List[str] = plan.asset_urls()
        self._index = {ref: i for i, ref in enumerate(self.inputs)}
        self.statements: List[str] = []

    def input_index(self, ref: str) -> int:
        return self._index[ref]

    def _frame_chain(self, seg: TimelineSegment, offset_ms: Optional[int] = None, alpha: bool = False) -> str:
        w, h = self.fmt.width, self.fmt.height
        pts = "PTS-STARTPTS" if seg.speed_multiplier == 1 else f"(PTS-STARTPTS)/{_number(seg.speed_multiplier)}"
        if offset_ms:
            pts += f"+{_seconds(offset_ms)}/TB"
        parts = [
            f"trim=start={_seconds(seg.trim_start_ms)}:end={_seconds(seg.trim_end_ms)}",
            f"setpts={pts}",
            f"fps={_number(self.fmt.fps)}",
        ]
        parts.extend(SEGMENT_FILTER_PRESETS[name] for name in seg.filters)
        parts.append(f"scale={w}:{h}:force_original_aspect_ratio=decrease")
        if alpha:
            parts.append("format=yuva420p")
            parts.append(f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black@0")
        else:
            parts.append(f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2")
        parts.append("setsar=1")
        return ",".join(parts)

    def _filler(self, label: str, duration_ms: int) -> None:
        self.statements.append(
            f"color=c=black:s={self.fmt.width}x{self.fmt.height}:r={_number(self.fmt.fps)}"
            f":d={_seconds(duration_ms)},setsar=1[{label}]"
        )

    def base_layer(self) -> str:
        """Emit base segment chains (+ gap fillers) and the concat node. Returns the video label."""
        labels: List[str] = []
        cursor_ms = 0
        for i, seg in enumerate(sorted(self.plan.base_segments, key=lambda s: s.timeline_start_ms)):
            gap = seg.timeline_start_ms - cursor_ms
            if gap > GAP_TOLERANCE_MS:
                gap_label = f"gap{i}"
                self._filler(gap_label, gap)
                labels.append(gap_label)
            label = f"v{i}"
            self.statements.append(
                f"[{self.input_index(seg.asset_url)}:v]{self._frame_chain(seg)}[{label}]"
            )
            labels.append(label)
            cursor_ms = max(cursor_ms, seg.timeline_end_ms)

        if len(labels) == 1:
            return labels[0]
        joined = "".join(f"[{label}]" for label in labels)
        self.statements.append(f"{joined}concat=n={len(labels)}:v=1:a=0[vout]")
        return "vout"

    def layers(self, current: str) -> str:
        for k, seg in enumerate(self.plan.layered_segments):
            layer_label = f"ov{k}"
            out_label = f"vl{k}"
            self.statements.append(
                f"[{self.input_index(seg.asset_url)}:v]"
                f"{self._frame_chain(seg, offset_ms=seg.timeline_start_ms, alpha=True)}[{layer_label}]"
            )
            self.statements.append(
                f"[{current}][{layer_label}]overlay=0:0:eof_action=pass:"
                f"{_window(seg.timeline_start_ms, seg.timeline_end_ms)}[{out_label}]"
            )
            current = out_label
        return current

    def _drawtext(self, overlay: TextOverlay) -> str:
        opts = []
        if overlay.font_file:
            opts.append(f"fontfile='{_escape_filter_path(overlay.font_file)}'")
        opts.append(f"text='{escape_drawtext(overlay.content)}'")
        opts.append(f"fontsize={overlay.font_size}")
        opts.append(f"fontcolor={overlay.color}")
        opts.append(f"x={overlay.x or _TEXT_X}")
        opts.append(f"y={overlay.y or _TEXT_Y[overlay.position]}")
        if overlay.box:
            opts.append(f"box=1:boxcolor={overlay.box_color}:boxborderw={overlay.box_border}")
        opts.append(_window(overlay.timeline_start_ms, overlay.timeline_end_ms))
        return "drawtext=" + ":".join(opts)

    def text(self, current: str) -> str:
        ordered = sorted(
            enumerate(self.plan.text_overlays), key=lambda item: (item[1].timeline_start_ms, item[0])
        )
        for n, (_, overlay) in enumerate(ordered):
            label = f"t{n}"
            self.statements.append(f"[{current}]{self._drawtext(overlay)}[{label}]")
            current = label
        return current

    def _audio_chain(self, track: AudioTrack) -> str:
        parts = [
            f"atrim=start={_seconds(track.trim_start_ms)}:end={_seconds(track.effective_trim_end_ms)}",
            "asetpts=PTS-STARTPTS",
        ]
        parts.extend(_atempo_chain(track.speed_multiplier))
        parts.append(f"volume={_number(track.volume)}")
        if track.fade_in_ms > 0:
            parts.append(f"afade=t=in:st=0:d={_seconds(track.fade_in_ms)}")
        if track.fade_out_ms > 0:
            start = track.timeline_duration_ms - track.fade_out_ms
            parts.append(f"afade=t=out:st={_seconds(start)}:d={_seconds(track.fade_out_ms)}")
        if track.timeline_start_ms > 0:
            parts.append(f"adelay={track.timeline_start_ms}:all=1")
        return ",".join(parts)

    def audio(self) -> str:
        tracks = self.plan.audio_tracks
        if not tracks:
            self.statements.append(
                f"anullsrc=r={SILENT_SAMPLE_RATE}:cl=stereo,"
                f"atrim=duration={_seconds(self.plan.total_duration_ms)}[aout]"
            )
            return "aout"

        labels = []
        for j, track in enumerate(tracks):
            label = f"a{j}"
            self.statements.append(
                f"[{self.input_index(track.asset_url)}:a]{self._audio_chain(track)}[{label}]"
            )
            labels.append(label)
        joined = "".join(f"[{label}]" for label in labels)
        self.statements.append(
            f"{joined}amix=inputs={len(labels)}:duration=longest:dropout_transition=0:normalize=0[aout]"
        )
        return "aout"


# =============================================================================
# Output arguments
# =============================================================================

def _video_codec_args(fmt: OutputFormat, encoder_override: Optional[str]) -> List[str]:
    if fmt.container == "webm":
        encoder = "libvpx-vp9"
    elif encoder_override:
        encoder = encoder_override
    else:
        encoder = VIDEO_ENCODERS.get(fmt.codec.lower(), "libx264")

    args = ["-c:v", encoder]
    if encoder in ("libx264", "libx265"):
        args += ["-preset", X264_PRESET]
    if encoder in DEFAULT_CRF:
        if fmt.video_bitrate_kbps:
            args += ["-b:v", f"{fmt.video_bitrate_kbps}k"]
        else:
            crf = fmt.crf if fmt.crf is not None else DEFAULT_CRF[encoder]
            args += ["-crf", str(crf)]
            if encoder == "libvpx-vp9":
                args += ["-b:v", "0"]
    else:
        args += ["-b:v", f"{fmt.video_bitrate_kbps or HW_DEFAULT_BITRATE_KBPS}k"]
    args += ["-pix_fmt", "yuv420p"]
    return args


def _audio_codec_args(fmt: OutputFormat) -> List[str]:
    codec = "libopus" if fmt.container == "webm" else "aac"
    return ["-c:a", codec, "-b:a", f"{fmt.audio_bitrate_kbps}k"]


def compile_plan(
    plan: ExecutionPlan,
    engine: EngineId,
    output_path: str,
    *,
    ffmpeg_path: str = "ffmpeg",
    video_encoder: Optional[str] = None,
) -> CompiledCommand:
    """
    Compile a validated plan for an engine.

    Args:
        plan: Plan that passed validate_plan()
        engine: SERVER_FFMPEG, or PLAN_EXPORT for a portable command artifact
        output_path: Output file path
        ffmpeg_path: Program to invoke (ignored for PLAN_EXPORT, which always uses "ffmpeg")
        video_encoder: Encoder override (e.g. a detected hardware H.264 encoder)

    Returns:
        CompiledCommand

    Raises:
        UnsupportedEngineError: For engines rendered outside this process
    """
    if engine not in (EngineId.SERVER_FFMPEG, EngineId.PLAN_EXPORT):
        raise UnsupportedEngineError(f"No command compiler for engine '{engine.value}'")

    graph = _GraphBuilder(plan)
    video = graph.base_layer()
    video = graph.layers(video)
    video = graph.text(video)
    audio = graph.audio()
    filter_graph = ";".join(graph.statements)

    fmt = plan.output_format
    args: List[str] = ["-hide_banner", "-y"]
    for ref in graph.inputs:
        args += ["-i", ref]
    args += ["-filter_complex", filter_graph, "-map", f"[{video}]", "-map", f"[{audio}]"]
    args += ["-t", _seconds(plan.total_duration_ms), "-r", _number(fmt.fps)]
    args += _video_codec_args(fmt, video_encoder if engine == EngineId.SERVER_FFMPEG else None)
    args += _audio_codec_args(fmt)
    if fmt.container in ("mp4", "mov"):
        args += ["-movflags", "+faststart"]
    args.append(output_path)

    command = ffmpeg_path if engine == EngineId.SERVER_FFMPEG else "ffmpeg"
    return CompiledCommand(command, tuple(args), filter_graph, output_path)
