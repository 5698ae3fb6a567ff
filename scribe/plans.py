from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"


@dataclass(frozen=True)
class PlanConfig:
    plan: Plan
    display_name: str
    credit_allotment: int
    max_file_duration_minutes: int

    @property
    def is_paid(self) -> bool:
        return self.plan is not Plan.FREE

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.value,
            "name": self.display_name,
            "credits": self.credit_allotment,
            "maxFileDuration": self.max_file_duration_minutes,
        }


PLANS: Dict[Plan, PlanConfig] = {
    Plan.FREE: PlanConfig(Plan.FREE, "Free", credit_allotment=0, max_file_duration_minutes=1),
    Plan.BASIC: PlanConfig(Plan.BASIC, "Basic", credit_allotment=500, max_file_duration_minutes=30),
}


def plan_config(plan: Plan) -> PlanConfig:
    return PLANS[plan]


def plan_limit(plan: Plan) -> int:
    return PLANS[plan].max_file_duration_minutes


def plan_from_name(name: Optional[str]) -> Optional[Plan]:
    """Resolve a provider-facing plan name ("Basic", "basic") to a Plan."""
    key = (name or "").strip().lower()
    for plan in Plan:
        if plan.value == key:
            return plan
    return None


def paid_plan_from_name(name: Optional[str]) -> Optional[PlanConfig]:
    plan = plan_from_name(name)
    if plan is None:
        return None
    cfg = PLANS[plan]
    return cfg if cfg.is_paid else None


def list_plans() -> List[Dict[str, Any]]:
    return [cfg.as_dict() for cfg in PLANS.values()]
