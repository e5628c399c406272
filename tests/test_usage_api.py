def test_track_within_limits(client):
    response = client.post(
        "/usage/track-with-limits",
        json={"tenantId": "tenant-1", "durationSeconds": 90, "callId": "c-1"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert (data["callsUsed"], data["minutesUsed"]) == (1, 2)
    assert data["thresholdReached"] is False
    assert data["callId"] == "c-1"


def test_tenth_call_over_both_limits_returns_402(client, repos, seed_usage):
    seed_usage("tenant-1", calls=9, minutes=24)
    response = client.post("/usage/track-with-limits", json={"tenantId": "tenant-1", "durationSeconds": 120})
    assert response.status_code == 402
    data = response.json()
    assert data["error"] == "TRIAL_LIMIT_EXCEEDED"
    assert data["limitType"] == "both"
    assert (data["minutesUsed"], data["callsUsed"]) == (25, 10)
    assert (data["minutesLimit"], data["callsLimit"]) == (25, 10)
    assert data["redirectTo"] == "/pricing"
    assert data["trialEnded"] is True
    assert repos.tenants.get("tenant-1").trial_blocked


def test_track_validation(client):
    assert client.post("/usage/track-with-limits", json={"tenantId": "tenant-1"}).status_code == 400
    assert client.post("/usage/track-with-limits", content=b"nope").status_code == 400
    missing = client.post("/usage/track-with-limits", json={"tenantId": "ghost", "durationSeconds": 10})
    assert missing.status_code == 404


def test_snapshot(client, seed_usage):
    seed_usage("tenant-paid", calls=3, minutes=12)
    response = client.get("/usage/track-with-limits", params={"tenantId": "tenant-paid"})
    assert response.status_code == 200
    assert response.json()["minutesUsed"] == 12
    assert client.get("/usage/track-with-limits").status_code == 400
    assert client.get("/usage/track-with-limits", params={"tenantId": "ghost"}).status_code == 404


def test_trial_status(client, seed_usage):
    seed_usage("tenant-1", calls=2, minutes=4)
    data = client.get("/trial/status", params={"tenantId": "tenant-1"}).json()
    assert data["allowed"] is True
    assert data["callsRemaining"] == 8
    assert data["variant"] == "control"
    assert client.get("/trial/status").status_code == 400


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
