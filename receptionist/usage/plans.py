from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PaidPlan:
    name: str
    minutes_included: int
    overage_rate_cents: int


PAID_PLANS: dict[str, PaidPlan] = {
    "starter": PaidPlan(name="Starter", minutes_included=300, overage_rate_cents=20),
    "growth": PaidPlan(name="Growth", minutes_included=1000, overage_rate_cents=18),
    "pro": PaidPlan(name="Pro", minutes_included=3000, overage_rate_cents=15),
}


def plan_for_tier(plan_tier: str | None) -> PaidPlan | None:
    if not plan_tier:
        return None
    return PAID_PLANS.get(plan_tier)
