import json

import pytest

from receptionist.calls.webhook import parse_event

HEADERS = {"x-shared-secret": "hook-secret"}


def _post(client, body, headers=HEADERS):
    return client.post("/vapi/webhook", headers=headers, content=json.dumps(body))


def test_wrong_secret_is_rejected(client, repos, webhook_body):
    response = _post(client, webhook_body("assistant-request"), headers={"x-shared-secret": "nope"})
    assert response.status_code == 401
    assert repos.calls.store == {}


def test_bad_json_and_non_objects(client):
    response = client.post("/vapi/webhook", headers=HEADERS, content=b"{not json")
    assert response.status_code == 400
    assert _post(client, [1, 2]).status_code == 400


def test_full_call_lifecycle(client, repos, webhook_body):
    assert _post(client, webhook_body("assistant-request", startedAt="2026-03-10T14:00:00Z")).json() == {}
    assert _post(client, webhook_body("assistant-request", startedAt="2026-03-10T14:00:00Z")).status_code == 200
    _post(client, webhook_body("status-update", status="in-progress"))
    report = webhook_body(
        "end-of-call-report",
        endedAt="2026-03-10T14:05:30Z",
        cost=0.42,
        toolCalls=[{"toolName": "quote_estimate", "success": True}],
    )
    report["message"]["artifact"] = {"recordingUrl": "https://recordings/call-1.mp3"}
    assert _post(client, report).status_code == 200

    (session,) = repos.calls.store.values()
    assert session.tenant_id == "tenant-1"
    assert session.outcome == "completed"
    assert session.duration_sec == 330
    assert session.cost_cents == 42
    assert session.transcript_url == "https://recordings/call-1.mp3"
    assert session.raw_json == report
    (period,) = repos.usage.store.values()
    assert (period.call_count, period.minutes_used) == (1, 6)


def test_flat_envelope_with_message_level_fields(client, repos):
    body = {"type": "assistant-request", "call": {"id": "call-flat"}, "startedAt": "2026-03-10T14:00:00Z"}
    _post(client, body, headers={**HEADERS, "x-tenant-id": "tenant-1"})
    (session,) = repos.calls.store.values()
    assert session.vapi_call_id == "call-flat"
    assert session.started_at.hour == 14


def test_parse_event_pulls_message_level_status():
    event = parse_event({"message": {"type": "status-update", "status": "ended", "call": {"id": "c"}}})
    assert event.call.status == "ended"
    assert event.call_id == "c"
    assert event.call.tool_calls == []


def test_unknown_type_and_missing_call_id_are_acknowledged(client, repos):
    assert _post(client, {"message": {"type": "transcript", "call": {"id": "x"}}}).json() == {}
    assert _post(client, {"message": {"type": "assistant-request"}}).status_code == 200
    assert repos.calls.store == {}


@pytest.mark.parametrize(
    "call",
    [{"id": 12345}, {"id": "call-1", "startedAt": "yesterday-ish"}],
)
def test_malformed_event_is_acknowledged_and_ignored(client, repos, call):
    response = _post(client, {"message": {"type": "assistant-request", "call": call}})
    assert response.status_code == 200
    assert response.json() == {}
    assert repos.calls.store == {}


def test_handler_failure_still_answers_200(client, repos, monkeypatch, webhook_body):
    def _boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repos.calls, "get_by_external_id", _boom)
    response = _post(client, webhook_body("assistant-request"))
    assert response.status_code == 200
    assert response.json() == {}


def test_unattributed_call_is_not_recorded(client, repos):
    body = {"message": {"type": "assistant-request", "call": {"id": "call-9", "assistantId": "unknown"}}}
    assert _post(client, body).status_code == 200
    assert repos.calls.store == {}


def test_cors_preflight(client):
    response = client.options(
        "/vapi/webhook",
        headers={
            "Origin": "https://dashboard.example.com",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "x-vapi-signature",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in ("*", "https://dashboard.example.com")
