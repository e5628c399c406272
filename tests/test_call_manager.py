from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from receptionist.calls.manager import derive_outcome
from receptionist.calls.webhook import parse_event
from receptionist.schemas import BookingRecord, ToolCallSummary

STARTED = "2026-03-10T14:00:00Z"
ENDED = "2026-03-10T14:03:20Z"


def _start(services, webhook_body, call_id="call-1"):
    event = parse_event(webhook_body("assistant-request", call_id, startedAt=STARTED))
    return services.calls.on_assistant_request(event, "tenant-1")


def _report(webhook_body, call_id="call-1", tool_calls=(), **extra):
    body = webhook_body(
        "end-of-call-report",
        call_id,
        **{"endedAt": ENDED, "toolCalls": list(tool_calls), **extra},
    )
    return parse_event(body)


def test_outcome_precedence():
    booking = ToolCallSummary(toolName="create_booking", success=True)
    handoff = ToolCallSummary(toolName="handoff_sms", success=True)
    failed_booking = ToolCallSummary(toolName="create_booking", success=False)
    assert derive_outcome([handoff, booking]) == "booked"
    assert derive_outcome([failed_booking, handoff]) == "handoff"
    assert derive_outcome([failed_booking]) == "completed"
    assert derive_outcome([]) == "unknown"


def test_duplicate_assistant_requests_create_one_row(services, repos, webhook_body):
    first = _start(services, webhook_body)
    second = _start(services, webhook_body)
    assert first.id == second.id
    assert len(repos.calls.store) == 1
    assert first.started_at == datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)


def test_concurrent_assistant_requests_create_one_row(services, repos, webhook_body):
    with ThreadPoolExecutor(max_workers=8) as pool:
        sessions = list(pool.map(lambda _: _start(services, webhook_body), range(16)))
    assert len(repos.calls.store) == 1
    assert {session.id for session in sessions} == set(repos.calls.store)


def test_assistant_request_without_start_uses_now(services, repos, webhook_body, now):
    event = parse_event(webhook_body("assistant-request", "call-2"))
    session = services.calls.on_assistant_request(event, "tenant-1")
    assert session.started_at == now
    assert session.assistant_id == "asst-1"


def test_status_update_for_unknown_call_creates_nothing(services, repos, webhook_body):
    event = parse_event(webhook_body("status-update", "ghost", status="ended"))
    assert services.calls.on_status_update(event, "tenant-1") is None
    assert repos.calls.store == {}


def test_status_update_ended_sets_duration(services, webhook_body):
    _start(services, webhook_body)
    event = parse_event(webhook_body("status-update", status="ended", endedAt=ENDED))
    session = services.calls.on_status_update(event, "tenant-1")
    assert session.duration_sec == 200
    assert session.outcome == "unknown"


def test_report_with_booking_and_handoff_is_booked(services, webhook_body):
    _start(services, webhook_body)
    tools = [
        {"toolName": "handoff_sms", "success": True},
        {"toolName": "create_booking", "success": True},
    ]
    session = services.calls.on_end_of_call_report(_report(webhook_body, tool_calls=tools), "tenant-1")
    assert session.outcome == "booked"


def test_report_without_tool_calls_is_unknown(services, webhook_body):
    _start(services, webhook_body)
    session = services.calls.on_end_of_call_report(_report(webhook_body), "tenant-1")
    assert session.outcome == "unknown"
    assert session.duration_sec == 200


def test_report_sets_cost_and_recording(services, webhook_body):
    _start(services, webhook_body)
    body = webhook_body("end-of-call-report", endedAt=ENDED, cost=0.237)
    body["message"]["artifact"] = {"recordingUrl": "https://rec/1.wav"}
    session = services.calls.on_end_of_call_report(parse_event(body), "tenant-1")
    assert session.cost_cents == 24
    assert session.transcript_url == "https://rec/1.wav"


def test_terminal_call_keeps_timing_and_outcome(services, repos, webhook_body):
    _start(services, webhook_body)
    booked = [{"toolName": "create_booking", "success": True}]
    services.calls.on_end_of_call_report(_report(webhook_body, tool_calls=booked), "tenant-1")

    replay = _report(webhook_body, endedAt="2026-03-10T14:30:00Z", cost=1.5)
    session = services.calls.on_end_of_call_report(replay, "tenant-1")
    late_status = parse_event(webhook_body("status-update", status="ended", endedAt="2026-03-10T15:00:00Z"))
    services.calls.on_status_update(late_status, "tenant-1")

    stored = next(iter(repos.calls.store.values()))
    assert session.duration_sec == 200
    assert stored.duration_sec == 200
    assert stored.ended_at == datetime(2026, 3, 10, 14, 3, 20, tzinfo=timezone.utc)
    assert stored.outcome == "booked"
    assert stored.cost_cents == 150


def test_stale_status_update_keeps_report_fields(services, repos, webhook_body, monkeypatch):
    _start(services, webhook_body)
    booked = [{"toolName": "create_booking", "success": True}]
    pending = [_report(webhook_body, tool_calls=booked, cost=0.5)]
    read = repos.calls.get_by_external_id

    def read_then_report(tenant_id, vapi_call_id):
        # The report lands between the status-update's read and its writes.
        session = read(tenant_id, vapi_call_id)
        if pending:
            services.calls.on_end_of_call_report(pending.pop(), "tenant-1")
        return session

    monkeypatch.setattr(repos.calls, "get_by_external_id", read_then_report)
    status = parse_event(webhook_body("status-update", status="ended", endedAt="2026-03-10T14:10:00Z"))
    services.calls.on_status_update(status, "tenant-1")

    stored = next(iter(repos.calls.store.values()))
    assert stored.outcome == "booked"
    assert stored.cost_cents == 50
    assert stored.duration_sec == 200
    assert stored.usage_recorded_at is not None


def test_usage_metered_once_across_replays(services, repos, webhook_body):
    _start(services, webhook_body)
    services.calls.on_end_of_call_report(_report(webhook_body), "tenant-1")
    services.calls.on_end_of_call_report(_report(webhook_body), "tenant-1")
    (period,) = repos.usage.store.values()
    assert period.call_count == 1
    assert period.minutes_used == 4
    assert next(iter(repos.calls.store.values())).usage_recorded_at is not None


def test_limit_breach_on_report_is_logged_not_raised(services, repos, webhook_body, seed_usage):
    seed_usage("tenant-1", calls=9, minutes=24)
    _start(services, webhook_body)
    session = services.calls.on_end_of_call_report(_report(webhook_body), "tenant-1")
    assert session is not None
    assert repos.usage.store["period-tenant-1"].minutes_used == 25
    assert repos.tenants.get("tenant-1").trial_blocked


def test_report_backfills_unlinked_bookings(services, repos, webhook_body, now):
    repos.bookings.create(
        BookingRecord(
            id="b-1",
            tenant_id="tenant-1",
            vapi_call_id="call-1",
            confirmation="ABCD1234",
            window_text="tomorrow 9-11",
            start_ts=now,
            name="Jane Doe",
            phone="+15551234567",
            address="123 Main St",
        )
    )
    session = _start(services, webhook_body)
    services.calls.on_end_of_call_report(_report(webhook_body), "tenant-1")
    assert repos.bookings.store["b-1"].call_id == session.id


def test_report_for_unknown_call_is_dropped(services, repos, webhook_body):
    assert services.calls.on_end_of_call_report(_report(webhook_body, "ghost"), "tenant-1") is None
    assert repos.calls.store == {}
    assert repos.usage.store == {}
