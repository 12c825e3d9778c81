import uuid

import pytest
from starlette.testclient import TestClient

from app.main import create_app


@pytest.fixture
def client(settings, clock, session_factory):
    app = create_app(settings, clock=clock, session_factory=session_factory)
    with TestClient(app) as c:
        yield c


def test_health_needs_no_token(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_routes_require_a_bearer_token(client) -> None:
    assert client.post("/api/playback/sessions", json={"deviceClass": "web"}).status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.get("/api/playback/status?deviceClass=web", headers=bad).status_code == 401


def test_start_session_returns_session_id(client, auth_headers) -> None:
    resp = client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=auth_headers("u1"),
    )
    assert resp.status_code == 201
    body = resp.json()
    uuid.UUID(body["sessionId"])
    assert body["reused"] is False


def test_conflict_is_a_409_with_owner_class(client, auth_headers) -> None:
    headers = auth_headers("u1")
    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=headers,
    )

    resp = client.post("/api/playback/sessions", json={"deviceClass": "web"}, headers=headers)
    assert resp.status_code == 409
    body = resp.json()
    assert body["ownerClass"] == "desktop"
    assert "desktop client" in body["detail"]
    assert "sessionId" not in body


def test_status_check_shape(client, auth_headers, clock) -> None:
    headers = auth_headers("u1")
    resp = client.get("/api/playback/status", params={"deviceClass": "web"}, headers=headers)
    assert resp.json() == {"hasConflict": False, "ownerClass": None}

    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=headers,
    )
    resp = client.get("/api/playback/status", params={"deviceClass": "web"}, headers=headers)
    assert resp.json() == {"hasConflict": True, "ownerClass": "desktop"}

    clock.advance(31)
    resp = client.get("/api/playback/status", params={"deviceClass": "web"}, headers=headers)
    assert resp.json() == {"hasConflict": False, "ownerClass": "desktop"}


def test_status_check_rejects_unknown_device_class(client, auth_headers) -> None:
    resp = client.get("/api/playback/status", params={"deviceClass": "tv"}, headers=auth_headers("u1"))
    assert resp.status_code == 422


def test_heartbeat_keeps_desktop_live(client, auth_headers, clock) -> None:
    headers = auth_headers("u1")
    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=headers,
    )
    for _ in range(4):
        clock.advance(15)
        resp = client.post("/api/playback/heartbeat", json={"deviceToken": "D1"}, headers=headers)
        assert resp.status_code == 204
        assert resp.content == b""

    resp = client.post("/api/playback/sessions", json={"deviceClass": "web"}, headers=headers)
    assert resp.status_code == 409


def test_heartbeat_for_another_users_device_is_forbidden(client, auth_headers) -> None:
    assert client.post(
        "/api/playback/heartbeat", json={"deviceToken": "D1"}, headers=auth_headers("u1"),
    ).status_code == 204
    resp = client.post(
        "/api/playback/heartbeat", json={"deviceToken": "D1"}, headers=auth_headers("u2"),
    )
    assert resp.status_code == 403


def test_heartbeat_without_token_is_rejected(client, auth_headers) -> None:
    headers = auth_headers("u1")
    assert client.post("/api/playback/heartbeat", json={}, headers=headers).status_code == 422
    assert client.post(
        "/api/playback/heartbeat", json={"deviceToken": ""}, headers=headers,
    ).status_code == 422


def test_end_session_twice(client, auth_headers) -> None:
    headers = auth_headers("u1")
    session_id = client.post(
        "/api/playback/sessions", json={"deviceClass": "web"}, headers=headers,
    ).json()["sessionId"]

    first = client.post(f"/api/playback/sessions/{session_id}/end", headers=headers)
    second = client.post(
        f"/api/playback/sessions/{session_id}/end", json={"reason": "natural"}, headers=headers,
    )
    assert first.status_code == 200
    assert first.json() == {"detail": "Session ended"}
    assert second.status_code == 200
    assert second.json() == {"detail": "Session already ended"}

    listed = client.get("/api/playback/sessions", headers=headers).json()
    assert listed[0]["id"] == session_id
    assert listed[0]["closedReason"] == "natural"


def test_end_someone_elses_session_is_404(client, auth_headers) -> None:
    session_id = client.post(
        "/api/playback/sessions", json={"deviceClass": "web"}, headers=auth_headers("u1"),
    ).json()["sessionId"]
    resp = client.post(f"/api/playback/sessions/{session_id}/end", headers=auth_headers("u2"))
    assert resp.status_code == 404


def test_release_device_then_web_starts(client, auth_headers) -> None:
    headers = auth_headers("u1")
    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=headers,
    )
    assert client.delete("/api/playback/devices/D1", headers=headers).status_code == 204
    resp = client.post("/api/playback/sessions", json={"deviceClass": "web"}, headers=headers)
    assert resp.status_code == 201


def test_force_cleanup(client, auth_headers) -> None:
    headers = auth_headers("u1")
    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=headers,
    )
    first = client.post("/api/playback/cleanup", headers=headers)
    second = client.post("/api/playback/cleanup", headers=headers)
    assert first.json() == {"closedSessions": 1, "expiredDevices": 1}
    assert second.json() == {"closedSessions": 0, "expiredDevices": 0}


def test_admin_routes_require_admin_role(client, auth_headers) -> None:
    client.post(
        "/api/playback/sessions",
        json={"deviceClass": "desktop", "deviceToken": "D1"},
        headers=auth_headers("u1"),
    )

    denied = client.post("/api/admin/playback/users/u1/cleanup", headers=auth_headers("u2"))
    assert denied.status_code == 403
    assert denied.json() == {"detail": "Insufficient permissions"}

    admin = auth_headers("ops", "ADMIN")
    resp = client.post("/api/admin/playback/users/u1/cleanup", headers=admin)
    assert resp.json() == {"closedSessions": 1, "expiredDevices": 1}

    resp = client.post("/api/admin/playback/sweep", headers=admin)
    assert resp.json() == {"expiredDevices": 0, "abandonedSessions": 0}
