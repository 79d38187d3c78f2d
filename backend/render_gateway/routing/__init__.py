"""
Capability routing.

A plan's required capabilities are derived from its content; the first
engine (by priority) that is available and declares a superset wins.
plan_export is always the last resort.
"""

from .capabilities import Capability, required_capabilities
from .engines import EngineId, EngineProfile, build_engine_list
from .router import RejectedEngine, RouteDecision, route

__all__ = [
    "Capability",
    "required_capabilities",
    "EngineId",
    "EngineProfile",
    "build_engine_list",
    "RejectedEngine",
    "RouteDecision",
    "route",
]
