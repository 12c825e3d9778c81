"""
Client-side configuration for desktop and web playback contexts.

Loaded from `PLAYBACK_CLIENT_*` environment variables (or a .env file),
independently of the server's `Settings`.
"""

from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    BASE_URL: str = "http://localhost:8000"

    # ── Polling ──────────────────────────────────────────────────────
    POLL_INTERVAL_SECONDS: float = 5.0
    # Must stay at or below half the poll interval.
    STATUS_CACHE_SECONDS: float = 2.5
    REQUEST_TIMEOUT_SECONDS: float = 4.0

    # ── Desktop liveness ─────────────────────────────────────────────
    HEARTBEAT_INTERVAL_SECONDS: float = 15.0

    # ── Failure policy ───────────────────────────────────────────────
    # Consecutive hard connectivity failures before playback pauses.
    HARD_FAILURE_THRESHOLD: int = 2
    START_RETRY_ATTEMPTS: int = 3

    model_config = {"env_file": ".env", "env_prefix": "PLAYBACK_CLIENT_", "extra": "ignore"}

    @property
    def effective_cache_seconds(self) -> float:
        return max(0.0, min(self.STATUS_CACHE_SECONDS, self.POLL_INTERVAL_SECONDS / 2))
