from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from dateutil.relativedelta import relativedelta

from ..db.repository import TenantRepository, UsageRepository
from ..errors import NotFoundError, UsageLimitExceeded
from ..schemas import TenantAccount, UsagePeriod, utcnow
from .plans import plan_for_tier
from .trial import CohortConfig, check_limits, days_remaining, usage_percent, variant_for_tenant

logger = logging.getLogger(__name__)

THRESHOLD_PERCENT = 70
WARNING_PERCENT = 90


def billable_minutes(duration_seconds: float) -> int:
    return math.ceil(max(0.0, duration_seconds) / 60)


def billing_period(tenant: TenantAccount, now: datetime) -> tuple[datetime, datetime]:
    """The tenant's current billing window.

    Uses the subscription period when it covers ``now``, otherwise the
    calendar month. Either way the start is deterministic, which keeps lazy
    period creation idempotent.
    """
    start, end = tenant.current_period_start, tenant.current_period_end
    if start and end and start <= now < end:
        return start, end
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return month_start, month_start + relativedelta(months=1)


@dataclass
class UsageResult:
    period: UsagePeriod
    is_on_trial: bool
    minutes_limit: int
    calls_limit: int | None
    limit_exceeded: bool
    limit_type: str | None
    threshold_reached: bool
    warning_at_90: bool
    call_id: str | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "minutesUsed": self.period.minutes_used,
            "callsUsed": self.period.call_count,
            "minutesLimit": self.minutes_limit,
            "callsLimit": self.calls_limit,
            "overageMinutes": self.period.overage_minutes,
            "overageAmount": self.period.overage_amount_cents,
            "thresholdReached": self.threshold_reached,
            "warningAt90": self.warning_at_90,
            "limitExceeded": self.limit_exceeded,
            "limitType": self.limit_type,
            "isOnTrial": self.is_on_trial,
            "callId": self.call_id,
        }


@dataclass
class CallPermission:
    allowed: bool
    reason: str | None = None
    is_in_trial: bool = False
    is_blocked: bool = False
    calls_used: int = 0
    minutes_used: int = 0
    calls_remaining: int | None = None
    minutes_remaining: int | None = None
    days_remaining: int | None = None
    variant: str | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "isInTrial": self.is_in_trial,
            "isBlocked": self.is_blocked,
            "callsUsed": self.calls_used,
            "minutesUsed": self.minutes_used,
            "callsRemaining": self.calls_remaining,
            "minutesRemaining": self.minutes_remaining,
            "daysRemaining": self.days_remaining,
            "variant": self.variant,
        }


class UsageMeter:
    """Meters completed calls per tenant and billing period and gates trials."""

    def __init__(
        self,
        tenants: TenantRepository,
        usage: UsageRepository,
        cohort_config: CohortConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tenants = tenants
        self.usage = usage
        self.cohort_config = cohort_config
        self.clock = clock

    def _tenant(self, tenant_id: str) -> TenantAccount:
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            raise NotFoundError(f"tenant {tenant_id} not found")
        return tenant

    def record_call(
        self, tenant_id: str, duration_seconds: float, call_id: str | None = None
    ) -> UsageResult:
        """Add one call and its rounded-up minutes to the current period.

        Hard trial limits clamp the counters in the same write as the
        increment. Raises UsageLimitExceeded when a hard limit trips.
        """
        tenant = self._tenant(tenant_id)
        now = self.clock()
        minutes = billable_minutes(duration_seconds)
        period_start, period_end = billing_period(tenant, now)
        period = self.usage.ensure_period(
            UsagePeriod(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                period_start=period_start,
                period_end=period_end,
            )
        )

        if not tenant.is_trialing:
            plan = plan_for_tier(tenant.plan_tier)
            period = self.usage.increment(
                period.id,
                calls=1,
                minutes=minutes,
                minutes_included=plan.minutes_included if plan else None,
                overage_rate_cents=plan.overage_rate_cents if plan else None,
            )
            minutes_limit = plan.minutes_included if plan else 0
            percent = period.minutes_used / minutes_limit * 100 if minutes_limit else 0.0
            logger.info(
                "Usage for tenant %s: %s minutes (%s included), %s overage",
                tenant_id,
                period.minutes_used,
                minutes_limit,
                period.overage_minutes,
            )
            return UsageResult(
                period=period,
                is_on_trial=False,
                minutes_limit=minutes_limit,
                calls_limit=None,
                limit_exceeded=False,
                limit_type=None,
                threshold_reached=percent >= THRESHOLD_PERCENT,
                warning_at_90=percent >= WARNING_PERCENT,
                call_id=call_id,
            )

        variant = variant_for_tenant(tenant, self.cohort_config)
        hard = variant.behavior == "hard"
        period = self.usage.increment(
            period.id,
            calls=1,
            minutes=minutes,
            calls_limit=variant.calls_limit if hard else None,
            minutes_limit=variant.minutes_limit if hard else None,
        )
        limits = check_limits(period.call_count, period.minutes_used, variant)
        logger.info(
            "Trial usage for tenant %s (%s): %s/%s calls, %s/%s minutes",
            tenant_id,
            variant.key,
            period.call_count,
            variant.calls_limit,
            period.minutes_used,
            variant.minutes_limit,
        )

        if limits.limits_exceeded and hard:
            self.tenants.mark_trial_blocked(tenant_id)
            logger.warning(
                "Trial %s limit exceeded for tenant %s; blocked at %s calls, %s minutes",
                limits.limit_type,
                tenant_id,
                period.call_count,
                period.minutes_used,
            )
            raise UsageLimitExceeded(
                limit_type=limits.limit_type or "calls",
                minutes_used=period.minutes_used,
                minutes_limit=variant.minutes_limit,
                calls_used=period.call_count,
                calls_limit=variant.calls_limit,
                message=limits.message(variant) or "Trial limit reached.",
            )

        percent = usage_percent(period.call_count, period.minutes_used, variant)
        return UsageResult(
            period=period,
            is_on_trial=True,
            minutes_limit=variant.minutes_limit,
            calls_limit=variant.calls_limit,
            limit_exceeded=limits.limits_exceeded,
            limit_type=limits.limit_type,
            threshold_reached=percent >= THRESHOLD_PERCENT,
            warning_at_90=percent >= WARNING_PERCENT,
            call_id=call_id,
        )

    def can_make_call(self, tenant_id: str) -> CallPermission:
        """Read-only gate check. Never mutates counters or the tenant row."""
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            return CallPermission(allowed=False, reason="Tenant not found")
        if not tenant.is_trialing:
            return CallPermission(allowed=True, variant=tenant.trial_variant)

        now = self.clock()
        variant = variant_for_tenant(tenant, self.cohort_config)
        period = self.usage.get_current(tenant_id, now)
        calls_used = period.call_count if period else 0
        minutes_used = period.minutes_used if period else 0
        limits = check_limits(calls_used, minutes_used, variant)
        remaining_days = days_remaining(tenant.trial_ends_at, now)
        denied = CallPermission(
            allowed=False,
            is_in_trial=True,
            is_blocked=True,
            calls_used=calls_used,
            minutes_used=minutes_used,
            calls_remaining=0,
            minutes_remaining=0,
            days_remaining=remaining_days,
            variant=variant.key,
        )

        if tenant.trial_blocked:
            denied.reason = "Trial limit reached. Please upgrade to continue."
            return denied
        if tenant.trial_ends_at is not None and now > tenant.trial_ends_at:
            denied.reason = "Trial period expired. Please subscribe to continue."
            denied.days_remaining = 0
            return denied
        if limits.limits_exceeded and variant.behavior == "hard":
            denied.reason = "Trial limit reached. Please upgrade to continue."
            return denied

        return CallPermission(
            allowed=True,
            is_in_trial=True,
            calls_used=calls_used,
            minutes_used=minutes_used,
            calls_remaining=limits.calls_remaining,
            minutes_remaining=limits.minutes_remaining,
            days_remaining=remaining_days,
            variant=variant.key,
        )

    def snapshot(self, tenant_id: str) -> dict[str, Any]:
        tenant = self._tenant(tenant_id)
        now = self.clock()
        period = self.usage.get_current(tenant_id, now)
        minutes_used = period.minutes_used if period else 0
        calls_used = period.call_count if period else 0
        period_end = period.period_end if period else billing_period(tenant, now)[1]

        if tenant.is_trialing:
            variant = variant_for_tenant(tenant, self.cohort_config)
            limits = check_limits(calls_used, minutes_used, variant)
            return {
                "minutesUsed": minutes_used,
                "minutesIncluded": variant.minutes_limit,
                "callsUsed": calls_used,
                "callsIncluded": variant.calls_limit,
                "minutesRemaining": limits.minutes_remaining,
                "callsRemaining": limits.calls_remaining,
                "overageMinutes": 0,
                "overageAmount": 0,
                "periodEnd": period_end.isoformat(),
                "planTier": tenant.plan_tier,
                "isOnTrial": True,
                "variant": variant.key,
                "daysRemaining": days_remaining(tenant.trial_ends_at, now),
                "limitExceeded": limits.limits_exceeded,
                "limitType": limits.limit_type,
                "limitMessage": limits.message(variant),
            }

        plan = plan_for_tier(tenant.plan_tier)
        return {
            "minutesUsed": minutes_used,
            "minutesIncluded": plan.minutes_included if plan else 0,
            "callsUsed": calls_used,
            "callsIncluded": None,
            "overageMinutes": period.overage_minutes if period else 0,
            "overageAmount": period.overage_amount_cents if period else 0,
            "periodEnd": period_end.isoformat(),
            "planTier": tenant.plan_tier,
            "isOnTrial": False,
            "limitExceeded": False,
        }
