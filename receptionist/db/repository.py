from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Protocol

import httpx
from postgrest.exceptions import APIError

from ..errors import PersistenceError
from ..schemas import (
    Assistant,
    BookingRecord,
    CallSession,
    TenantAccount,
    ToolInvocationRecord,
    UsagePeriod,
)

logger = logging.getLogger(__name__)


class CallRepository(Protocol):
    def get_by_external_id(self, tenant_id: str, vapi_call_id: str) -> CallSession | None:
        ...

    def create_if_absent(self, session: CallSession) -> tuple[CallSession, bool]:
        ...

    def mark_ended(self, call_id: str, ended_at: datetime, duration_sec: int) -> bool:
        """Set timing only while ``ended_at`` is still null."""
        ...

    def set_outcome(self, call_id: str, outcome: str) -> bool:
        """Set the outcome only while it is still ``unknown``."""
        ...

    def update_audit(
        self,
        call_id: str,
        *,
        raw_json: dict[str, Any],
        cost_cents: int | None = None,
        transcript_url: str | None = None,
    ) -> None:
        ...

    def claim_usage(self, call_id: str, at: datetime) -> bool:
        ...


class ToolResultRepository(Protocol):
    def create(self, record: ToolInvocationRecord) -> ToolInvocationRecord:
        ...

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        ...


class BookingRepository(Protocol):
    def create(self, booking: BookingRecord) -> BookingRecord:
        ...

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        ...


class UsageRepository(Protocol):
    def get_current(self, tenant_id: str, at: datetime) -> UsagePeriod | None:
        ...

    def ensure_period(self, period: UsagePeriod) -> UsagePeriod:
        ...

    def increment(
        self,
        period_id: str,
        *,
        calls: int,
        minutes: int,
        minutes_included: int | None = None,
        overage_rate_cents: int | None = None,
        calls_limit: int | None = None,
        minutes_limit: int | None = None,
    ) -> UsagePeriod:
        """Add to the counters in one step, never past ``calls_limit``/``minutes_limit``."""
        ...


class TenantRepository(Protocol):
    def get(self, tenant_id: str) -> TenantAccount | None:
        ...

    def mark_trial_blocked(self, tenant_id: str) -> None:
        ...


class AssistantRepository(Protocol):
    def get_by_vapi_id(self, vapi_assistant_id: str) -> Assistant | None:
        ...


@dataclass
class Repositories:
    calls: CallRepository
    tool_results: ToolResultRepository
    bookings: BookingRepository
    usage: UsageRepository
    tenants: TenantRepository
    assistants: AssistantRepository


def _overage(minutes_used: int, minutes_included: int | None, rate_cents: int | None) -> tuple[int, int]:
    if minutes_included is None or rate_cents is None:
        return 0, 0
    overage_minutes = max(0, minutes_used - minutes_included)
    return overage_minutes, overage_minutes * rate_cents


def _capped(value: int, limit: int | None) -> int:
    return value if limit is None else min(value, limit)


# In-memory implementations. Each repository serialises its own mutations
# behind a lock, which stands in for the row-level atomicity Postgres gives
# the Supabase implementations below.


@dataclass
class InMemoryCallRepository:
    store: dict[str, CallSession] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def get_by_external_id(self, tenant_id: str, vapi_call_id: str) -> CallSession | None:
        with self.lock:
            for session in self.store.values():
                if session.tenant_id == tenant_id and session.vapi_call_id == vapi_call_id:
                    return session.model_copy(deep=True)
        return None

    def create_if_absent(self, session: CallSession) -> tuple[CallSession, bool]:
        with self.lock:
            for existing in self.store.values():
                if (
                    existing.tenant_id == session.tenant_id
                    and existing.vapi_call_id == session.vapi_call_id
                ):
                    return existing.model_copy(deep=True), False
            self.store[session.id] = session.model_copy(deep=True)
            return session, True

    def mark_ended(self, call_id: str, ended_at: datetime, duration_sec: int) -> bool:
        with self.lock:
            session = self.store.get(call_id)
            if session is None or session.ended_at is not None:
                return False
            session.ended_at = ended_at
            session.duration_sec = duration_sec
            return True

    def set_outcome(self, call_id: str, outcome: str) -> bool:
        with self.lock:
            session = self.store.get(call_id)
            if session is None or session.outcome != "unknown":
                return False
            session.outcome = outcome
            return True

    def update_audit(
        self,
        call_id: str,
        *,
        raw_json: dict[str, Any],
        cost_cents: int | None = None,
        transcript_url: str | None = None,
    ) -> None:
        with self.lock:
            session = self.store.get(call_id)
            if session is None:
                return
            session.raw_json = copy.deepcopy(raw_json)
            if cost_cents is not None:
                session.cost_cents = cost_cents
            if transcript_url is not None:
                session.transcript_url = transcript_url

    def claim_usage(self, call_id: str, at: datetime) -> bool:
        with self.lock:
            session = self.store.get(call_id)
            if session is None or session.usage_recorded_at is not None:
                return False
            session.usage_recorded_at = at
            return True


@dataclass
class InMemoryToolResultRepository:
    store: dict[str, ToolInvocationRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def create(self, record: ToolInvocationRecord) -> ToolInvocationRecord:
        with self.lock:
            self.store[record.id] = record.model_copy(deep=True)
        return record

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        linked = 0
        with self.lock:
            for record in self.store.values():
                if (
                    record.call_id is None
                    and record.tenant_id == tenant_id
                    and record.vapi_call_id == vapi_call_id
                ):
                    record.call_id = call_id
                    linked += 1
        return linked


@dataclass
class InMemoryBookingRepository:
    store: dict[str, BookingRecord] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def create(self, booking: BookingRecord) -> BookingRecord:
        with self.lock:
            self.store[booking.id] = booking.model_copy(deep=True)
        return booking

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        linked = 0
        with self.lock:
            for booking in self.store.values():
                if (
                    booking.call_id is None
                    and booking.tenant_id == tenant_id
                    and booking.vapi_call_id == vapi_call_id
                ):
                    booking.call_id = call_id
                    linked += 1
        return linked


@dataclass
class InMemoryUsageRepository:
    store: dict[str, UsagePeriod] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def get_current(self, tenant_id: str, at: datetime) -> UsagePeriod | None:
        with self.lock:
            candidates = [
                period
                for period in self.store.values()
                if period.tenant_id == tenant_id and period.period_end >= at
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda period: period.period_start)
            return latest.model_copy()

    def ensure_period(self, period: UsagePeriod) -> UsagePeriod:
        with self.lock:
            for existing in self.store.values():
                if (
                    existing.tenant_id == period.tenant_id
                    and existing.period_start == period.period_start
                ):
                    return existing.model_copy()
            self.store[period.id] = period.model_copy()
            return period

    def increment(
        self,
        period_id: str,
        *,
        calls: int,
        minutes: int,
        minutes_included: int | None = None,
        overage_rate_cents: int | None = None,
        calls_limit: int | None = None,
        minutes_limit: int | None = None,
    ) -> UsagePeriod:
        with self.lock:
            period = self._get(period_id)
            period.call_count = _capped(period.call_count + calls, calls_limit)
            period.minutes_used = _capped(period.minutes_used + minutes, minutes_limit)
            period.overage_minutes, period.overage_amount_cents = _overage(
                period.minutes_used, minutes_included, overage_rate_cents
            )
            return period.model_copy()

    def _get(self, period_id: str) -> UsagePeriod:
        try:
            return self.store[period_id]
        except KeyError as exc:
            raise PersistenceError(f"usage period {period_id} does not exist") from exc


@dataclass
class InMemoryTenantRepository:
    store: dict[str, TenantAccount] = field(default_factory=dict)

    def save(self, tenant: TenantAccount) -> TenantAccount:
        self.store[tenant.id] = tenant
        return tenant

    def get(self, tenant_id: str) -> TenantAccount | None:
        tenant = self.store.get(tenant_id)
        return tenant.model_copy() if tenant else None

    def mark_trial_blocked(self, tenant_id: str) -> None:
        if tenant_id in self.store:
            self.store[tenant_id].trial_blocked = True


@dataclass
class InMemoryAssistantRepository:
    store: dict[str, Assistant] = field(default_factory=dict)

    def save(self, assistant: Assistant) -> Assistant:
        self.store[assistant.vapi_assistant_id] = assistant
        return assistant

    def get_by_vapi_id(self, vapi_assistant_id: str) -> Assistant | None:
        return self.store.get(vapi_assistant_id)


def build_in_memory_repositories() -> Repositories:
    return Repositories(
        calls=InMemoryCallRepository(),
        tool_results=InMemoryToolResultRepository(),
        bookings=InMemoryBookingRepository(),
        usage=InMemoryUsageRepository(),
        tenants=InMemoryTenantRepository(),
        assistants=InMemoryAssistantRepository(),
    )


# Supabase implementations. The atomic operations are Postgres functions
# declared in schema.sql and called through rpc().


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (APIError, httpx.HTTPError) as exc:
        raise PersistenceError(f"{action} failed: {exc}") from exc


def _first(data: Any) -> dict | None:
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


class SupabaseCallRepository:
    def __init__(self, client) -> None:
        self.client = client

    def get_by_external_id(self, tenant_id: str, vapi_call_id: str) -> CallSession | None:
        with _storage_errors("call lookup"):
            response = (
                self.client.table("calls")
                .select("*")
                .eq("tenant_id", tenant_id)
                .eq("vapi_call_id", vapi_call_id)
                .limit(1)
                .execute()
            )
        row = _first(response.data)
        return CallSession(**row) if row else None

    def create_if_absent(self, session: CallSession) -> tuple[CallSession, bool]:
        existing = self.get_by_external_id(session.tenant_id, session.vapi_call_id)
        if existing:
            return existing, False
        payload = session.model_dump(mode="json")
        with _storage_errors("call insert"):
            response = (
                self.client.table("calls")
                .upsert(payload, on_conflict="tenant_id,vapi_call_id", ignore_duplicates=True)
                .execute()
            )
        if _first(response.data):
            return session, True
        # Lost the race to a concurrent insert; return the winner.
        winner = self.get_by_external_id(session.tenant_id, session.vapi_call_id)
        if winner is None:
            raise PersistenceError(f"call {session.vapi_call_id} vanished after insert")
        return winner, False

    def mark_ended(self, call_id: str, ended_at: datetime, duration_sec: int) -> bool:
        with _storage_errors("call end"):
            response = (
                self.client.table("calls")
                .update({"ended_at": ended_at.isoformat(), "duration_sec": duration_sec})
                .eq("id", call_id)
                .is_("ended_at", "null")
                .execute()
            )
        return bool(response.data)

    def set_outcome(self, call_id: str, outcome: str) -> bool:
        with _storage_errors("call outcome"):
            response = (
                self.client.table("calls")
                .update({"outcome": outcome})
                .eq("id", call_id)
                .eq("outcome", "unknown")
                .execute()
            )
        return bool(response.data)

    def update_audit(
        self,
        call_id: str,
        *,
        raw_json: dict[str, Any],
        cost_cents: int | None = None,
        transcript_url: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"raw_json": raw_json}
        if cost_cents is not None:
            payload["cost_cents"] = cost_cents
        if transcript_url is not None:
            payload["transcript_url"] = transcript_url
        with _storage_errors("call audit update"):
            self.client.table("calls").update(payload).eq("id", call_id).execute()

    def claim_usage(self, call_id: str, at: datetime) -> bool:
        with _storage_errors("usage claim"):
            response = (
                self.client.table("calls")
                .update({"usage_recorded_at": at.isoformat()})
                .eq("id", call_id)
                .is_("usage_recorded_at", "null")
                .execute()
            )
        return bool(response.data)


class SupabaseToolResultRepository:
    def __init__(self, client) -> None:
        self.client = client

    def create(self, record: ToolInvocationRecord) -> ToolInvocationRecord:
        with _storage_errors("tool result insert"):
            self.client.table("tool_results").insert(record.model_dump(mode="json")).execute()
        return record

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        with _storage_errors("tool result link"):
            response = (
                self.client.table("tool_results")
                .update({"call_id": call_id})
                .eq("tenant_id", tenant_id)
                .eq("vapi_call_id", vapi_call_id)
                .is_("call_id", "null")
                .execute()
            )
        return len(response.data or [])


class SupabaseBookingRepository:
    def __init__(self, client) -> None:
        self.client = client

    def create(self, booking: BookingRecord) -> BookingRecord:
        with _storage_errors("booking insert"):
            self.client.table("bookings").insert(booking.model_dump(mode="json")).execute()
        return booking

    def link_call(self, tenant_id: str, vapi_call_id: str, call_id: str) -> int:
        with _storage_errors("booking link"):
            response = (
                self.client.table("bookings")
                .update({"call_id": call_id})
                .eq("tenant_id", tenant_id)
                .eq("vapi_call_id", vapi_call_id)
                .is_("call_id", "null")
                .execute()
            )
        return len(response.data or [])


class SupabaseUsageRepository:
    def __init__(self, client) -> None:
        self.client = client

    def get_current(self, tenant_id: str, at: datetime) -> UsagePeriod | None:
        with _storage_errors("usage lookup"):
            response = (
                self.client.table("usage_tracking")
                .select("*")
                .eq("tenant_id", tenant_id)
                .gte("period_end", at.isoformat())
                .order("period_start", desc=True)
                .limit(1)
                .execute()
            )
        row = _first(response.data)
        return UsagePeriod(**row) if row else None

    def ensure_period(self, period: UsagePeriod) -> UsagePeriod:
        with _storage_errors("usage period insert"):
            self.client.table("usage_tracking").upsert(
                period.model_dump(mode="json"),
                on_conflict="tenant_id,period_start",
                ignore_duplicates=True,
            ).execute()
            response = (
                self.client.table("usage_tracking")
                .select("*")
                .eq("tenant_id", period.tenant_id)
                .eq("period_start", period.period_start.isoformat())
                .limit(1)
                .execute()
            )
        row = _first(response.data)
        if row is None:
            raise PersistenceError(f"usage period for {period.tenant_id} missing after upsert")
        return UsagePeriod(**row)

    def increment(
        self,
        period_id: str,
        *,
        calls: int,
        minutes: int,
        minutes_included: int | None = None,
        overage_rate_cents: int | None = None,
        calls_limit: int | None = None,
        minutes_limit: int | None = None,
    ) -> UsagePeriod:
        params = {
            "p_period_id": period_id,
            "p_calls": calls,
            "p_minutes": minutes,
            "p_minutes_included": minutes_included,
            "p_overage_rate_cents": overage_rate_cents,
            "p_calls_limit": calls_limit,
            "p_minutes_limit": minutes_limit,
        }
        with _storage_errors("usage increment"):
            response = self.client.rpc("increment_usage", params).execute()
        row = _first(response.data)
        if row is None:
            raise PersistenceError(f"usage period {period_id} does not exist")
        return UsagePeriod(**row)


class SupabaseTenantRepository:
    def __init__(self, client) -> None:
        self.client = client

    def get(self, tenant_id: str) -> TenantAccount | None:
        with _storage_errors("tenant lookup"):
            response = (
                self.client.table("tenants")
                .select(
                    "id,subscription_status,plan_tier,current_period_start,"
                    "current_period_end,trial_ends_at,trial_variant,trial_blocked"
                )
                .eq("id", tenant_id)
                .limit(1)
                .execute()
            )
        row = _first(response.data)
        return TenantAccount(**row) if row else None

    def mark_trial_blocked(self, tenant_id: str) -> None:
        with _storage_errors("tenant block"):
            self.client.table("tenants").update({"trial_blocked": True}).eq("id", tenant_id).execute()


class SupabaseAssistantRepository:
    def __init__(self, client) -> None:
        self.client = client

    def get_by_vapi_id(self, vapi_assistant_id: str) -> Assistant | None:
        with _storage_errors("assistant lookup"):
            response = (
                self.client.table("assistants")
                .select("id,tenant_id,vapi_assistant_id")
                .eq("vapi_assistant_id", vapi_assistant_id)
                .limit(1)
                .execute()
            )
        row = _first(response.data)
        return Assistant(**row) if row else None


def build_repositories(
    supabase_url: str | None,
    supabase_key: str | None,
    *,
    environment: str = "development",
) -> Repositories:
    if not supabase_url or not supabase_key:
        if environment == "production":
            raise ValueError("Missing Supabase configuration (SUPABASE_URL/SUPABASE_KEY).")
        logger.warning("Supabase not configured; using in-memory repositories")
        return build_in_memory_repositories()

    from supabase import create_client

    client = create_client(supabase_url, supabase_key)
    return Repositories(
        calls=SupabaseCallRepository(client),
        tool_results=SupabaseToolResultRepository(client),
        bookings=SupabaseBookingRepository(client),
        usage=SupabaseUsageRepository(client),
        tenants=SupabaseTenantRepository(client),
        assistants=SupabaseAssistantRepository(client),
    )
