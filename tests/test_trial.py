from datetime import datetime, timedelta, timezone

from receptionist.schemas import TenantAccount
from receptionist.usage.trial import (
    TRIAL_VARIANTS,
    CohortConfig,
    assign_variant,
    check_limits,
    days_remaining,
    stable_hash,
    variant_for_tenant,
)


def test_stable_hash_matches_polynomial_string_hash():
    assert stable_hash("") == 0
    assert stable_hash("abc") == 96354


def test_assignment_is_deterministic():
    config = CohortConfig(enabled=True)
    first = [assign_variant(f"tenant-{i}", config).key for i in range(50)]
    second = [assign_variant(f"tenant-{i}", config).key for i in range(50)]
    assert first == second
    assert set(first) <= {"control", "generous", "short"}


def test_assignment_walks_cumulative_buckets():
    # "abc" hashes to bucket 54: past control (0-49), inside generous (50-79).
    assert assign_variant("abc", CohortConfig(enabled=True)).key == "generous"


def test_disabled_assignment_uses_default_variant():
    assert assign_variant("abc", CohortConfig(enabled=False, default_variant="soft")).key == "soft"
    assert assign_variant("abc", CohortConfig(default_variant="missing")).key == "control"


def test_persisted_variant_wins_when_known():
    tenant = TenantAccount(id="abc", subscription_status="trialing", trial_variant="strict")
    assert variant_for_tenant(tenant, CohortConfig(enabled=True)).key == "strict"
    tenant.trial_variant = "retired"
    assert variant_for_tenant(tenant, CohortConfig(enabled=True)).key == "generous"


def test_either_dimension_trips_the_limit():
    control = TRIAL_VARIANTS["control"]
    assert check_limits(9, 24, control).limit_type is None
    assert check_limits(10, 3, control).limit_type == "calls"
    assert check_limits(2, 25, control).limit_type == "minutes"
    both = check_limits(10, 25, control)
    assert both.limit_type == "both"
    assert "10 trial calls" in both.message(control)


def test_days_remaining_rounds_up():
    now = datetime(2026, 3, 10, tzinfo=timezone.utc)
    assert days_remaining(now + timedelta(days=2, hours=1), now) == 3
    assert days_remaining(now - timedelta(days=1), now) == 0
    assert days_remaining(None, now) is None
