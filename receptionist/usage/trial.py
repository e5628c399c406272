"""Trial variants and deterministic cohort assignment.

Every trial tenant lands in one named variant. Assignment hashes the tenant
id into a bucket 0-99 and walks the configured distribution in order, so the
same tenant always gets the same variant for the same configuration.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from ..schemas import TenantAccount

TrialBehavior = Literal["hard", "soft"]


@dataclass(frozen=True)
class TrialVariant:
    key: str
    name: str
    description: str
    calls_limit: int
    minutes_limit: int
    duration_days: int
    behavior: TrialBehavior
    allow_wait_for_auto_convert: bool = True


TRIAL_VARIANTS: dict[str, TrialVariant] = {
    variant.key: variant
    for variant in (
        TrialVariant(
            key="control",
            name="Control (Standard)",
            description="10 calls, 25 minutes, 14 days, hard limits",
            calls_limit=10,
            minutes_limit=25,
            duration_days=14,
            behavior="hard",
        ),
        TrialVariant(
            key="generous",
            name="Generous Trial",
            description="20 calls, 50 minutes, 14 days, hard limits",
            calls_limit=20,
            minutes_limit=50,
            duration_days=14,
            behavior="hard",
        ),
        TrialVariant(
            key="short",
            name="Short Trial",
            description="10 calls, 25 minutes, 7 days, hard limits",
            calls_limit=10,
            minutes_limit=25,
            duration_days=7,
            behavior="hard",
        ),
        TrialVariant(
            key="soft",
            name="Soft Limits",
            description="10 calls, 25 minutes, 14 days, soft limits (can continue)",
            calls_limit=10,
            minutes_limit=25,
            duration_days=14,
            behavior="soft",
        ),
        TrialVariant(
            key="very_generous",
            name="Very Generous",
            description="50 calls, 100 minutes, 21 days, hard limits",
            calls_limit=50,
            minutes_limit=100,
            duration_days=21,
            behavior="hard",
        ),
        TrialVariant(
            key="strict",
            name="Strict Trial",
            description="5 calls, 15 minutes, 7 days, hard limits, no waiting",
            calls_limit=5,
            minutes_limit=15,
            duration_days=7,
            behavior="hard",
            allow_wait_for_auto_convert=False,
        ),
    )
}


@dataclass(frozen=True)
class CohortConfig:
    enabled: bool = False
    default_variant: str = "control"
    # Percentages in assignment order; they should add up to 100.
    distribution: tuple[tuple[str, int], ...] = (
        ("control", 50),
        ("generous", 30),
        ("short", 20),
    )


def stable_hash(value: str) -> int:
    """31-multiplier polynomial hash over UTF-16 code units, wrapped to int32."""
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = (h * 31 + code) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def assign_variant(
    tenant_id: str,
    config: CohortConfig,
    variants: dict[str, TrialVariant] = TRIAL_VARIANTS,
) -> TrialVariant:
    if not config.enabled:
        return variants.get(config.default_variant, variants["control"])

    bucket = stable_hash(tenant_id) % 100
    cumulative = 0
    for key, percentage in config.distribution:
        cumulative += percentage
        if bucket < cumulative:
            return variants[key]
    return variants["control"]


def variant_for_tenant(tenant: TenantAccount, config: CohortConfig) -> TrialVariant:
    if tenant.trial_variant in TRIAL_VARIANTS:
        return TRIAL_VARIANTS[tenant.trial_variant]
    return assign_variant(tenant.id, config)


@dataclass(frozen=True)
class LimitCheck:
    calls_exceeded: bool
    minutes_exceeded: bool
    calls_remaining: int
    minutes_remaining: int

    @property
    def limits_exceeded(self) -> bool:
        return self.calls_exceeded or self.minutes_exceeded

    @property
    def limit_type(self) -> str | None:
        if self.calls_exceeded and self.minutes_exceeded:
            return "both"
        if self.calls_exceeded:
            return "calls"
        if self.minutes_exceeded:
            return "minutes"
        return None

    def message(self, variant: TrialVariant) -> str | None:
        if self.limit_type == "both":
            return (
                f"You've used all {variant.calls_limit} trial calls and "
                f"{variant.minutes_limit} trial minutes. Upgrade to continue receiving calls."
            )
        if self.limit_type == "calls":
            return f"You've used all {variant.calls_limit} trial calls. Upgrade to continue receiving calls."
        if self.limit_type == "minutes":
            return f"You've used all {variant.minutes_limit} trial minutes. Upgrade to continue receiving calls."
        return None


def check_limits(calls_used: int, minutes_used: int, variant: TrialVariant) -> LimitCheck:
    # Either dimension alone trips the gate.
    return LimitCheck(
        calls_exceeded=calls_used >= variant.calls_limit,
        minutes_exceeded=minutes_used >= variant.minutes_limit,
        calls_remaining=max(0, variant.calls_limit - calls_used),
        minutes_remaining=max(0, variant.minutes_limit - minutes_used),
    )


def usage_percent(calls_used: int, minutes_used: int, variant: TrialVariant) -> float:
    return max(
        minutes_used / variant.minutes_limit * 100,
        calls_used / variant.calls_limit * 100,
    )


def days_remaining(trial_end: datetime | None, now: datetime) -> int | None:
    if trial_end is None:
        return None
    seconds = (trial_end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))
