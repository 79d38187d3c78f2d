"""
Execution engine identifiers and declared capabilities.

Every EngineId must appear in the capability matrix below; the module
refuses to import otherwise, so adding an engine or a capability forces
the matrix to be revisited.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Sequence

from .capabilities import ALL_CAPABILITIES, Capability


class EngineId(str, Enum):
    """Concrete processing backends a plan can be routed to."""

    WEBCODECS = "webcodecs"
    CLOUDINARY = "cloudinary"
    SERVER_FFMPEG = "server_ffmpeg"
    PLAN_EXPORT = "plan_export"


_CAPABILITY_MATRIX: Dict[EngineId, FrozenSet[Capability]] = {
    EngineId.WEBCODECS: frozenset({
        Capability.TRIM,
        Capability.RESIZE,
        Capability.FORMAT_CONVERT,
        Capability.SEGMENT_REPLACE,
        Capability.AUDIO_MUX,
    }),
    EngineId.CLOUDINARY: frozenset({
        Capability.TRIM,
        Capability.RESIZE,
        Capability.FORMAT_CONVERT,
        Capability.SPEED_CHANGE,
    }),
    EngineId.SERVER_FFMPEG: ALL_CAPABILITIES,
    # Performs no rendering, so it can honor anything
    EngineId.PLAN_EXPORT: ALL_CAPABILITIES,
}

_DEFAULT_PRIORITY: Dict[EngineId, int] = {
    EngineId.SERVER_FFMPEG: 1,
    EngineId.WEBCODECS: 10,
    EngineId.CLOUDINARY: 99,
    EngineId.PLAN_EXPORT: 999,
}

_DISPLAY_NAMES: Dict[EngineId, str] = {
    EngineId.WEBCODECS: "Browser WebCodecs",
    EngineId.CLOUDINARY: "Cloudinary Video API",
    EngineId.SERVER_FFMPEG: "Server FFmpeg",
    EngineId.PLAN_EXPORT: "Plan Export (manual render)",
}


def _check_matrix() -> None:
    for table in (_CAPABILITY_MATRIX, _DEFAULT_PRIORITY, _DISPLAY_NAMES):
        missing = [e.value for e in EngineId if e not in table]
        if missing:
            raise RuntimeError(f"Engine table incomplete, missing: {', '.join(missing)}")


_check_matrix()


@dataclass(frozen=True)
class EngineProfile:
    """
    One routable engine.

    Attributes:
        id: Engine identifier
        name: Human-readable name for logs and API output
        priority: Lower runs first
        capabilities: Declared capability superset
        renders: False only for plan_export, which returns artifacts instead of a file
    """

    id: EngineId
    name: str
    priority: int
    capabilities: FrozenSet[Capability]
    renders: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id.value,
            "name": self.name,
            "priority": self.priority,
            "capabilities": sorted(c.value for c in self.capabilities),
            "renders": self.renders,
        }


def engine_profile(engine_id: EngineId) -> EngineProfile:
    return EngineProfile(
        id=engine_id,
        name=_DISPLAY_NAMES[engine_id],
        priority=_DEFAULT_PRIORITY[engine_id],
        capabilities=_CAPABILITY_MATRIX[engine_id],
        renders=engine_id != EngineId.PLAN_EXPORT,
    )


PLAN_EXPORT_PROFILE = engine_profile(EngineId.PLAN_EXPORT)


def build_engine_list(engine_ids: Sequence[EngineId]) -> List[EngineProfile]:
    """
    Priority-ordered profiles for the given ids, with plan_export appended last.

    Duplicates are dropped. The order of engine_ids is taken as priority.
    """
    profiles: List[EngineProfile] = []
    seen = set()
    for position, engine_id in enumerate(engine_ids):
        if engine_id in seen or engine_id == EngineId.PLAN_EXPORT:
            continue
        seen.add(engine_id)
        base = engine_profile(engine_id)
        profiles.append(
            EngineProfile(base.id, base.name, position + 1, base.capabilities, base.renders)
        )
    profiles.append(PLAN_EXPORT_PROFILE)
    return profiles
