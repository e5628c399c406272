from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable

from ..db.repository import BookingRepository, CallRepository, ToolResultRepository
from ..errors import NotFoundError, UsageLimitExceeded
from ..schemas import CallOutcome, CallSession, ToolCallSummary, WebhookEvent, utcnow
from ..usage.meter import UsageMeter

logger = logging.getLogger(__name__)


def derive_outcome(tool_calls: Iterable[ToolCallSummary]) -> CallOutcome:
    """booked beats handoff beats completed; no tool calls at all is unknown."""
    calls = list(tool_calls)
    succeeded = {call.tool_name for call in calls if call.success}
    if "create_booking" in succeeded:
        return "booked"
    if "handoff_sms" in succeeded:
        return "handoff"
    if calls:
        return "completed"
    return "unknown"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class CallRecordManager:
    """Applies call lifecycle events to the stored call row.

    A call is pending until ``ended_at`` is set and terminal afterwards.
    Terminal rows only take audit updates (raw payload, cost, recording);
    their timing never moves and a derived outcome is never replaced.
    """

    def __init__(
        self,
        calls: CallRepository,
        tool_results: ToolResultRepository,
        bookings: BookingRepository,
        meter: UsageMeter,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.calls = calls
        self.tool_results = tool_results
        self.bookings = bookings
        self.meter = meter
        self.clock = clock

    def _timing(self, session: CallSession, ended_at: datetime | None) -> tuple[datetime, int]:
        ended_at = _aware(ended_at or self.clock())
        elapsed = (ended_at - _aware(session.started_at)).total_seconds()
        return ended_at, max(0, round(elapsed))

    def on_assistant_request(self, event: WebhookEvent, tenant_id: str, log=logger) -> CallSession:
        vapi_call_id = event.call_id
        existing = self.calls.get_by_external_id(tenant_id, vapi_call_id)
        if existing:
            log.info("Call %s already recorded; ignoring duplicate assistant-request", vapi_call_id)
            return existing

        session, created = self.calls.create_if_absent(
            CallSession(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                vapi_call_id=vapi_call_id,
                assistant_id=event.call.assistant_id,
                started_at=_aware(event.call.started_at or self.clock()),
                raw_json=event.raw,
            )
        )
        if not created:
            log.info("Call %s was created concurrently; using the stored row", vapi_call_id)
            return session

        log.info("Call %s started for tenant %s", vapi_call_id, tenant_id)
        permission = self.meter.can_make_call(tenant_id)
        if not permission.allowed:
            log.warning("Tenant %s is over its trial gate: %s", tenant_id, permission.reason)
        return session

    def on_status_update(self, event: WebhookEvent, tenant_id: str, log=logger) -> CallSession | None:
        session = self.calls.get_by_external_id(tenant_id, event.call_id)
        if session is None:
            log.warning("status-update for unknown call %s; dropped", event.call_id)
            return None

        self.calls.update_audit(session.id, raw_json=event.raw)
        if event.call.status == "ended" and not session.is_ended:
            ended_at, duration = self._timing(session, event.call.ended_at)
            if self.calls.mark_ended(session.id, ended_at, duration):
                log.info("Call %s ended after %ss", event.call_id, duration)
        return self.calls.get_by_external_id(tenant_id, event.call_id)

    def on_end_of_call_report(
        self, event: WebhookEvent, tenant_id: str, log=logger
    ) -> CallSession | None:
        session = self.calls.get_by_external_id(tenant_id, event.call_id)
        if session is None:
            log.warning("end-of-call-report for unknown call %s; dropped", event.call_id)
            return None

        # Each write is conditional on the stored row, so a concurrent
        # status-update can never undo what the report sets here.
        if not session.is_ended:
            self.calls.mark_ended(session.id, *self._timing(session, event.call.ended_at))
        outcome = derive_outcome(event.call.tool_calls)
        if outcome != "unknown":
            self.calls.set_outcome(session.id, outcome)
        self.calls.update_audit(
            session.id,
            raw_json=event.raw,
            cost_cents=round(event.call.cost * 100) if event.call.cost is not None else None,
            transcript_url=event.artifact.recording_url if event.artifact else None,
        )
        session = self.calls.get_by_external_id(tenant_id, event.call_id) or session

        bookings = self.bookings.link_call(tenant_id, session.vapi_call_id, session.id)
        results = self.tool_results.link_call(tenant_id, session.vapi_call_id, session.id)
        log.info(
            "Call %s closed as %s (%ss); linked %s bookings, %s tool results",
            session.vapi_call_id,
            session.outcome,
            session.duration_sec,
            bookings,
            results,
        )
        self._record_usage(session, log)
        return session

    def _record_usage(self, session: CallSession, log) -> None:
        if not self.calls.claim_usage(session.id, self.clock()):
            log.info("Usage for call %s already recorded", session.vapi_call_id)
            return
        try:
            self.meter.record_call(session.tenant_id, session.duration_sec or 0, call_id=session.id)
        except UsageLimitExceeded as exc:
            log.warning(
                "Tenant %s hit its %s trial limit on call %s",
                session.tenant_id,
                exc.limit_type,
                session.vapi_call_id,
            )
        except NotFoundError:
            log.warning("Tenant %s not found; usage for call %s not metered", session.tenant_id, session.id)
