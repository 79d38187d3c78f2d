"""
Capability router.

Walks engines in priority order and selects the first whose declared
capabilities cover what the plan requires. Every engine passed over is
recorded, with the reason, in the fallback chain. plan_export is always
considered last and never refused, so routing always selects something.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..plans.models import ExecutionPlan
from .capabilities import Capability, required_capabilities
from .engines import PLAN_EXPORT_PROFILE, EngineId, EngineProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RejectedEngine:
    engine: EngineId
    reason: str
    missing: FrozenSet[Capability] = frozenset()

    def to_dict(self) -> Dict[str, object]:
        return {
            "engine": self.engine.value,
            "reason": self.reason,
            "missing": sorted(c.value for c in self.missing),
        }


@dataclass(frozen=True)
class RouteDecision:
    """
    Outcome of routing one plan.

    Attributes:
        selected: Engine that will handle the plan
        fallback_chain: Engines rejected before it, in the order tried
        required: Capabilities the plan needs
    """

    selected: EngineId
    fallback_chain: Tuple[RejectedEngine, ...]
    required: FrozenSet[Capability]

    @property
    def is_export_only(self) -> bool:
        return self.selected == EngineId.PLAN_EXPORT

    def to_dict(self) -> Dict[str, object]:
        return {
            "selected": self.selected.value,
            "fallbackChain": [r.to_dict() for r in self.fallback_chain],
            "required": sorted(c.value for c in self.required),
        }


def route(
    plan: ExecutionPlan,
    engines: Sequence[EngineProfile],
    is_available: Optional[Callable[[EngineId], bool]] = None,
) -> RouteDecision:
    """
    Select an engine for a plan.

    Args:
        plan: A validated plan
        engines: Candidate engines (any order; sorted by priority here)
        is_available: Optional availability probe; engines it rejects are
            skipped with reason "unavailable". plan_export is never probed.

    Returns:
        RouteDecision; never without a selection
    """
    required = required_capabilities(plan)
    candidates = sorted(
        (e for e in engines if e.id != EngineId.PLAN_EXPORT), key=lambda e: e.priority
    )

    rejected: List[RejectedEngine] = []
    for engine in candidates:
        if is_available is not None and not is_available(engine.id):
            rejected.append(RejectedEngine(engine.id, "unavailable"))
            continue
        missing = required - engine.capabilities
        if missing:
            names = ", ".join(sorted(c.value for c in missing))
            rejected.append(RejectedEngine(engine.id, f"missing capability: {names}", frozenset(missing)))
            continue
        decision = RouteDecision(engine.id, tuple(rejected), required)
        _log_decision(plan, decision)
        return decision

    decision = RouteDecision(PLAN_EXPORT_PROFILE.id, tuple(rejected), required)
    _log_decision(plan, decision)
    return decision


def _log_decision(plan: ExecutionPlan, decision: RouteDecision) -> None:
    chain = ", ".join(f"{r.engine.value} ({r.reason})" for r in decision.fallback_chain) or "none"
    logger.info(
        f"[Router] Plan {plan.plan_id} -> {decision.selected.value}; "
        f"required=[{', '.join(sorted(c.value for c in decision.required))}]; rejected: {chain}"
    )
