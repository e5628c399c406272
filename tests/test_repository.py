from datetime import timedelta

import httpx
import pytest
from postgrest.exceptions import APIError

from receptionist.db.repository import (
    InMemoryCallRepository,
    InMemoryUsageRepository,
    SupabaseCallRepository,
    SupabaseUsageRepository,
    build_repositories,
)
from receptionist.errors import PersistenceError
from receptionist.schemas import CallSession, UsagePeriod


class _FailingQuery:
    def __init__(self, exc):
        self.exc = exc

    def __getattr__(self, name):
        return lambda *args, **kwargs: self

    def execute(self):
        raise self.exc


class _FailingClient:
    def __init__(self, exc):
        self.exc = exc

    def table(self, name):
        return _FailingQuery(self.exc)

    def rpc(self, name, params):
        return _FailingQuery(self.exc)


def test_build_repositories_requires_config_in_production():
    with pytest.raises(ValueError):
        build_repositories(None, None, environment="production")
    repos = build_repositories(None, None)
    assert isinstance(repos.calls, InMemoryCallRepository)


def test_terminal_writes_are_conditional(now):
    calls = InMemoryCallRepository()
    session, created = calls.create_if_absent(
        CallSession(id="c-1", tenant_id="t", vapi_call_id="v", started_at=now)
    )
    assert created
    assert calls.mark_ended("c-1", now + timedelta(seconds=90), 90)
    assert not calls.mark_ended("c-1", now + timedelta(hours=1), 3600)
    assert calls.set_outcome("c-1", "handoff")
    assert not calls.set_outcome("c-1", "completed")
    assert calls.claim_usage("c-1", now)
    assert not calls.claim_usage("c-1", now + timedelta(seconds=1))

    calls.update_audit("c-1", raw_json={"type": "status-update"}, cost_cents=12)
    stored = calls.get_by_external_id("t", "v")
    assert (stored.duration_sec, stored.outcome, stored.cost_cents) == (90, "handoff", 12)
    assert stored.usage_recorded_at == now
    assert stored.raw_json == {"type": "status-update"}


def test_increment_clamps_to_limits_in_the_same_write(now):
    usage = InMemoryUsageRepository()
    period = usage.ensure_period(
        UsagePeriod(
            id="p-1",
            tenant_id="t",
            period_start=now,
            period_end=now + timedelta(days=30),
            call_count=9,
            minutes_used=24,
        )
    )
    capped = usage.increment(period.id, calls=1, minutes=16, calls_limit=10, minutes_limit=25)
    assert (capped.call_count, capped.minutes_used) == (10, 25)
    unlimited = usage.increment(period.id, calls=1, minutes=5)
    assert (unlimited.call_count, unlimited.minutes_used) == (11, 30)


@pytest.mark.parametrize(
    "exc",
    [
        APIError({"message": "relation does not exist", "code": "42P01"}),
        httpx.ConnectError("connection refused"),
    ],
)
def test_supabase_errors_become_persistence_errors(exc):
    with pytest.raises(PersistenceError):
        SupabaseCallRepository(_FailingClient(exc)).get_by_external_id("t", "v")
    with pytest.raises(PersistenceError):
        SupabaseUsageRepository(_FailingClient(exc)).increment("p", calls=1, minutes=2)
