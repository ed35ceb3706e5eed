"""Risk classification for planned changes."""

from dataclasses import dataclass
from enum import IntEnum

from driftplan.models import Action, InstanceAddress, Plan


class Risk(IntEnum):
    """Change risk level. Higher value = more disruptive."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


RISK_MAP: dict[Action, Risk] = {
    # Critical: needs an operator before anything can proceed
    Action.CONFLICT: Risk.CRITICAL,
    # High: destroys a live object
    Action.DELETE: Risk.HIGH,
    Action.REPLACE: Risk.HIGH,
    # Medium: modifies a live object in place
    Action.UPDATE: Risk.MEDIUM,
    # Low is the default for creates
}


@dataclass(frozen=True)
class AnalyzedPlan:
    """A Plan annotated with risk classifications."""

    plan: Plan
    change_risks: dict[InstanceAddress, Risk]
    plan_risk: Risk | None


def analyze_plan(plan: Plan) -> AnalyzedPlan:
    """Classify each planned operation by risk."""
    change_risks: dict[InstanceAddress, Risk] = {}
    for change in plan.changes:
        if change.action == Action.NO_OP:
            continue
        risk = RISK_MAP.get(change.action, Risk.LOW)
        if any(c.sensitive for c in change.changes) and risk < Risk.HIGH:
            risk = Risk(risk + 1)
        change_risks[change.address] = risk

    plan_risk = max(change_risks.values()) if change_risks else None
    return AnalyzedPlan(plan=plan, change_risks=change_risks, plan_risk=plan_risk)
