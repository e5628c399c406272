from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from receptionist.config import Settings
from receptionist.db.repository import build_in_memory_repositories
from receptionist.main import create_app
from receptionist.schemas import Assistant, TenantAccount, UsagePeriod
from receptionist.services import build_services
from receptionist.usage.meter import billing_period

FIXED_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)

WEBHOOK_SECRET = "hook-secret"
TOOL_SECRET = "tool-secret"


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        webhook_shared_secret=WEBHOOK_SECRET,
        tool_shared_secret=TOOL_SECRET,
        default_tenant_id=None,
        allow_default_tenant_fallback=False,
        supabase_url=None,
        supabase_key=None,
        trial_ab_enabled=False,
        trial_default_variant="control",
        business_timezone="America/New_York",
    )


@pytest.fixture
def repos():
    repos = build_in_memory_repositories()
    repos.tenants.save(
        TenantAccount(
            id="tenant-1",
            subscription_status="trialing",
            trial_variant="control",
            trial_ends_at=FIXED_NOW + timedelta(days=10),
        )
    )
    repos.tenants.save(
        TenantAccount(
            id="tenant-paid",
            subscription_status="active",
            plan_tier="starter",
        )
    )
    repos.assistants.save(Assistant(id="a-1", tenant_id="tenant-1", vapi_assistant_id="asst-1"))
    return repos


@pytest.fixture
def services(settings, repos):
    return build_services(settings, repos, clock=lambda: FIXED_NOW)


@pytest.fixture
def client(settings, repos) -> TestClient:
    return TestClient(create_app(settings, repos, clock=lambda: FIXED_NOW))


@pytest.fixture
def seed_usage(repos):
    """Put a tenant's current period at the given counters."""

    def _seed(tenant_id: str, *, calls: int, minutes: int) -> UsagePeriod:
        start, end = billing_period(repos.tenants.get(tenant_id), FIXED_NOW)
        period = repos.usage.ensure_period(
            UsagePeriod(id=f"period-{tenant_id}", tenant_id=tenant_id, period_start=start, period_end=end)
        )
        return repos.usage.increment(period.id, calls=calls, minutes=minutes)

    return _seed


@pytest.fixture
def webhook_body():
    def _body(event_type: str, call_id: str = "call-1", **call_fields) -> dict:
        call = {"id": call_id, "assistantId": "asst-1", **call_fields}
        return {"message": {"type": event_type, "call": call}}

    return _body
