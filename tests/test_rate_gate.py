import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from app.core.config import Settings
from app.main import create_app
from app.services.rate_gate import (
    HEARTBEAT_PATH,
    STATUS_PATH,
    RateGate,
    TokenBucketLimiter,
    normalize_path,
    route_path,
)


class VirtualClock:
    def __init__(self) -> None:
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


def _gate(clock: VirtualClock, rpm: int = 60, burst: int = 5, **kwargs) -> RateGate:
    limiter = TokenBucketLimiter(
        rate_per_s=rpm / 60.0,
        burst=burst,
        bucket_ttl_s=600.0,
        cleanup_interval_s=30.0,
        clock=clock,
    )
    return RateGate(limiter=limiter, requests_per_minute=rpm, **kwargs)


# ── Path normalization ───────────────────────────────────────────────
def test_normalize_path() -> None:
    assert normalize_path("/api//playback/status/") == "/api/playback/status"
    assert normalize_path("api/playback/heartbeat") == "/api/playback/heartbeat"
    assert normalize_path("/") == "/"
    assert normalize_path("") == "/"


def test_route_path_strips_mount_prefix() -> None:
    scope = {"path": "/coordinator/api/playback/status", "root_path": "/coordinator"}
    assert route_path(scope) == STATUS_PATH
    # Only a whole path segment counts as the prefix.
    scope = {"path": "/coordinatorx/api/playback/status", "root_path": "/coordinator"}
    assert route_path(scope) == "/coordinatorx/api/playback/status"
    assert route_path({"path": HEARTBEAT_PATH, "root_path": ""}) == HEARTBEAT_PATH


def test_exemption_is_exact() -> None:
    gate = _gate(VirtualClock(), exempt_paths=["/metrics"])
    assert gate.is_exempt(HEARTBEAT_PATH)
    assert gate.is_exempt(STATUS_PATH + "/")
    assert gate.is_exempt("/metrics")
    assert not gate.is_exempt("/api/playback/sessions")
    assert not gate.is_exempt(HEARTBEAT_PATH + "/extra")
    assert not gate.is_exempt("/api/playback/devices/D1")


def test_only_polling_paths_are_exempt_by_default() -> None:
    gate = _gate(VirtualClock())
    assert gate.exempt_paths == frozenset({HEARTBEAT_PATH, STATUS_PATH})
    for path in ("/health", "/docs", "/redoc", "/openapi.json"):
        assert not gate.is_exempt(path)


# ── Limiting ─────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_polling_paths_survive_ten_thousand_calls() -> None:
    clock = VirtualClock()
    gate = _gate(clock, rpm=6, burst=2)
    for i in range(10_000):
        path = STATUS_PATH if i % 2 else HEARTBEAT_PATH
        assert (await gate.admit(path, "10.0.0.1")).allowed, f"poll {i} was limited"
        clock.t += 5.0


@pytest.mark.anyio
async def test_start_session_is_still_limited() -> None:
    clock = VirtualClock()
    gate = _gate(clock, rpm=60, burst=3)
    results = [await gate.admit("/api/playback/sessions", "10.0.0.1") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[-1].retry_after_s == pytest.approx(1.0)
    assert results[-1].remaining == 0

    clock.t += 1.0
    assert (await gate.admit("/api/playback/sessions", "10.0.0.1")).allowed
    # Other clients have their own bucket.
    assert (await gate.admit("/api/playback/sessions", "10.0.0.2")).allowed


@pytest.mark.anyio
async def test_idle_buckets_are_cleaned_up() -> None:
    clock = VirtualClock()
    limiter = TokenBucketLimiter(
        rate_per_s=1.0, burst=2, bucket_ttl_s=60.0, cleanup_interval_s=10.0, clock=clock,
    )
    await limiter.take("a")
    clock.t += 61
    await limiter.take("b")
    assert len(limiter) == 1


# ── Over HTTP, including under a mount prefix ────────────────────────
@pytest.fixture
def limited_settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        SWEEPER_ENABLED=False,
        RATE_LIMIT_ENABLED=True,
        RATE_LIMIT_REQUESTS_PER_MINUTE=1,
        RATE_LIMIT_BURST=2,
    )


def test_headers_and_429_over_http(limited_settings, clock, session_factory, auth_headers) -> None:
    app = create_app(limited_settings, clock=clock, session_factory=session_factory)
    headers = auth_headers("u1")
    with TestClient(app) as client:
        for _ in range(2):
            resp = client.post("/api/playback/sessions", json={"deviceClass": "web"}, headers=headers)
            assert resp.status_code == 201
            assert resp.headers["X-RateLimit-Limit"] == "1"

        blocked = client.post("/api/playback/sessions", json={"deviceClass": "web"}, headers=headers)
        assert blocked.status_code == 429
        assert blocked.json() == {"detail": "Too many requests. Slow down."}
        assert int(blocked.headers["Retry-After"]) >= 1

        for _ in range(50):
            assert client.get(
                STATUS_PATH, params={"deviceClass": "web"}, headers=headers,
            ).status_code == 200
            assert client.post(
                HEARTBEAT_PATH, json={"deviceToken": "D1"}, headers=headers,
            ).status_code == 204


def test_health_is_limited_like_other_traffic(limited_settings, clock, session_factory) -> None:
    app = create_app(limited_settings, clock=clock, session_factory=session_factory)
    with TestClient(app) as client:
        codes = [client.get("/health").status_code for _ in range(3)]
    assert codes == [200, 200, 429]


def test_exemptions_hold_under_a_mount_prefix(
    limited_settings, clock, session_factory, auth_headers,
) -> None:
    inner = create_app(limited_settings, clock=clock, session_factory=session_factory)
    outer = FastAPI()
    outer.mount("/coordinator", inner)
    headers = auth_headers("u1")

    with TestClient(outer) as client:
        for _ in range(50):
            status = client.get(
                "/coordinator" + STATUS_PATH, params={"deviceClass": "web"}, headers=headers,
            )
            assert status.status_code == 200
            beat = client.post(
                "/coordinator" + HEARTBEAT_PATH, json={"deviceToken": "D1"}, headers=headers,
            )
            assert beat.status_code == 204

        codes = [
            client.post(
                "/coordinator/api/playback/sessions",
                json={"deviceClass": "web"},
                headers=headers,
            ).status_code
            for _ in range(3)
        ]
        assert codes == [201, 201, 429]
