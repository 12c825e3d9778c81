"""
Rate gate — request-volume guard in front of the coordinator routes.

Heartbeat and status-check are called every few seconds by every
connected client and would exhaust any sane per-minute quota, so they
are exempt; everything else (start / end / cleanup / admin / health /
docs / unrelated traffic) goes through a per-client token bucket unless
listed in `RATE_LIMIT_EXEMPT_PATHS`.

The exemption is matched against the path *as the router sees it*:
Starlette keeps the mount or proxy prefix in `scope["path"]` and
records it separately in `scope["root_path"]`, and routing strips it
before matching.  `route_path` applies the same normalization so the
gate and the router always agree on what "the path" is.  If they ever
disagree, every exemption silently misses and polling clients get
rate-limited into uselessness.
"""

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.config import Settings

logger = logging.getLogger(__name__)

HEARTBEAT_PATH = "/api/playback/heartbeat"
STATUS_PATH = "/api/playback/status"

DEFAULT_EXEMPT_PATHS: tuple[str, ...] = (HEARTBEAT_PATH, STATUS_PATH)

_SLASHES = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    """Collapse repeated slashes and drop a trailing slash ("/" stays "/")."""
    p = _SLASHES.sub("/", path or "")
    if not p.startswith("/"):
        p = "/" + p
    if len(p) > 1:
        p = p.rstrip("/") or "/"
    return p


def route_path(scope: dict[str, Any]) -> str:
    """The request path with the mount / proxy prefix removed."""
    path = scope.get("path") or ""
    root_path = scope.get("root_path") or ""
    if root_path and path.startswith(root_path):
        rest = path[len(root_path):]
        if not rest or rest.startswith("/"):
            path = rest
    return normalize_path(path)


@dataclass(frozen=True)
class Admission:
    allowed: bool
    remaining: int
    retry_after_s: float | None = None


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float

    def refill(self, now: float, rate_per_s: float, capacity: float) -> None:
        if rate_per_s > 0 and now > self.refilled_at:
            self.tokens = min(capacity, self.tokens + (now - self.refilled_at) * rate_per_s)
        self.refilled_at = max(self.refilled_at, now)


class TokenBucketLimiter:
    """
    One token bucket per client key, refilled continuously at
    *rate_per_s* up to *burst*.  Buckets idle for longer than
    *bucket_ttl_s* are evicted at most once per *cleanup_interval_s*.
    """

    def __init__(
        self,
        *,
        rate_per_s: float,
        burst: int,
        bucket_ttl_s: float,
        cleanup_interval_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_per_s = max(0.0, float(rate_per_s))
        self.burst = max(1, int(burst))
        self._bucket_ttl_s = max(1.0, float(bucket_ttl_s))
        self._cleanup_interval_s = max(1.0, float(cleanup_interval_s))
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = asyncio.Lock()
        self._next_cleanup = 0.0

    async def take(self, key: str, cost: float = 1.0) -> Admission:
        async with self._lock:
            now = self._clock()
            if now >= self._next_cleanup:
                self._evict_idle(now)
                self._next_cleanup = now + self._cleanup_interval_s

            bucket = self._buckets.setdefault(key, _Bucket(float(self.burst), now))
            bucket.refill(now, self.rate_per_s, float(self.burst))

            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return Admission(allowed=True, remaining=int(bucket.tokens))

            retry_after = None
            if self.rate_per_s > 0:
                retry_after = (cost - bucket.tokens) / self.rate_per_s
            return Admission(allowed=False, remaining=int(bucket.tokens), retry_after_s=retry_after)

    def _evict_idle(self, now: float) -> None:
        cutoff = now - self._bucket_ttl_s
        for key in [k for k, b in self._buckets.items() if b.refilled_at < cutoff]:
            del self._buckets[key]

    def __len__(self) -> int:
        return len(self._buckets)


class RateGate:
    def __init__(
        self,
        *,
        limiter: TokenBucketLimiter,
        requests_per_minute: int,
        exempt_paths: Iterable[str] = (),
        scope: str = "ip",
        trust_proxy_headers: bool = False,
    ) -> None:
        self.limiter = limiter
        self.requests_per_minute = int(requests_per_minute)
        self.burst = limiter.burst
        exempt = list(DEFAULT_EXEMPT_PATHS)
        for p in exempt_paths or ():
            s = str(p or "").strip()
            if s:
                exempt.append(s)
        self.exempt_paths = frozenset(normalize_path(p) for p in exempt)
        self.scope = (scope or "ip").strip().lower()
        self.trust_proxy_headers = bool(trust_proxy_headers)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RateGate":
        rpm = max(1, int(settings.RATE_LIMIT_REQUESTS_PER_MINUTE))
        limiter = TokenBucketLimiter(
            rate_per_s=rpm / 60.0,
            burst=settings.RATE_LIMIT_BURST,
            bucket_ttl_s=settings.RATE_LIMIT_BUCKET_TTL_SECONDS,
            cleanup_interval_s=settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
            clock=clock,
        )
        return cls(
            limiter=limiter,
            requests_per_minute=rpm,
            exempt_paths=settings.RATE_LIMIT_EXEMPT_PATHS,
            scope=settings.RATE_LIMIT_SCOPE,
            trust_proxy_headers=settings.RATE_LIMIT_TRUST_PROXY_HEADERS,
        )

    def is_exempt(self, path: str) -> bool:
        """Exact match on the normalized route path — no prefix matching."""
        return normalize_path(path) in self.exempt_paths

    def client_key(self, request: Request, path: str) -> str:
        ip = "unknown"
        if self.trust_proxy_headers:
            raw = request.headers.get("x-forwarded-for") or ""
            if raw:
                ip = raw.split(",")[0].strip() or "unknown"
        if ip == "unknown" and request.client is not None:
            ip = request.client.host or "unknown"
        return ip if self.scope == "ip" else f"{ip}:{path}"

    async def admit(self, path: str, key: str) -> Admission:
        """Gate decision for one request; exempt paths are always allowed."""
        if self.is_exempt(path):
            return Admission(allowed=True, remaining=self.burst)
        return await self.limiter.take(key)


async def rate_gate_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    gate: RateGate | None = getattr(request.app.state, "rate_gate", None)
    if gate is None or request.method.upper() == "OPTIONS":
        return await call_next(request)

    path = route_path(request.scope)
    if gate.is_exempt(path):
        return await call_next(request)

    admission = await gate.admit(path, gate.client_key(request, path))
    limit_hdr = str(gate.requests_per_minute)
    remaining_hdr = str(max(0, admission.remaining))
    if not admission.allowed:
        logger.warning("Rate limit exceeded on %s", path)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many requests. Slow down."},
            headers={
                "Retry-After": str(max(1, int(math.ceil(admission.retry_after_s or 1.0)))),
                "X-RateLimit-Limit": limit_hdr,
                "X-RateLimit-Remaining": remaining_hdr,
            },
        )

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = limit_hdr
    response.headers["X-RateLimit-Remaining"] = remaining_hdr
    return response
