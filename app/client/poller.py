"""
Client poller — keeps one playback context honest about who owns playback.

State machine:

    IDLE ──play()──▶ PLAYING ──conflict / sustained outage──▶ BLOCKED
      ▲                 │                                       │
      └─────stop()──────┴───────────────stop()──────────────────┘

- `play()` performs a synchronous StartSession first; a rejection means
  local playback never starts.
- While PLAYING, StatusCheck runs every poll interval.  Results are
  cached for at most half the interval, and concurrent triggers (a UI
  event racing the scheduled tick) share one in-flight request.
- Conflict → BLOCKED: pause, show a notice, and leave the server-side
  session alone.  The client does not get to end somebody else's
  session; preemption or the abandonment sweep closes it.
- Transport errors: timeouts and 5xx are fail-open (keep playing, log);
  `HARD_FAILURE_THRESHOLD` consecutive connectivity losses are
  fail-closed (pause).
- Nothing polls while the poller is not PLAYING.
"""

import asyncio
import enum
import logging
import uuid
from typing import Protocol

from app.client.clock import MonotonicClock
from app.client.config import ClientSettings
from app.client.coordinator_client import (
    ConnectivityLost,
    CoordinatorClient,
    CoordinatorClientError,
    SessionRejected,
    StatusResult,
)
from app.models.session import DeviceClass

logger = logging.getLogger(__name__)

TRY_AGAIN_NOTICE = "Couldn't start playback. Please try again."
CONNECTION_LOST_NOTICE = "Connection lost. Playback paused."


def conflict_notice(owner_class: DeviceClass | None) -> str:
    where = owner_class.value if owner_class is not None else "another"
    return f"Playback is active on your {where} client. Close it there to watch here."


class PollerState(str, enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"
    BLOCKED = "blocked"


class Player(Protocol):
    """Local media surface the poller drives."""

    def start(self) -> None: ...

    def pause(self) -> None: ...

    def notify(self, message: str) -> None: ...


class StatusCache:
    def __init__(self, ttl_s: float, clock: MonotonicClock) -> None:
        self.ttl_s = max(0.0, float(ttl_s))
        self._clock = clock
        self._value: StatusResult | None = None
        self._stored_at = 0.0

    def get(self) -> StatusResult | None:
        if self._value is None:
            return None
        if self._clock.now() - self._stored_at >= self.ttl_s:
            self._value = None
            return None
        return self._value

    def put(self, value: StatusResult) -> None:
        self._value = value
        self._stored_at = self._clock.now()

    def clear(self) -> None:
        self._value = None


class PlaybackPoller:
    def __init__(
        self,
        client: CoordinatorClient,
        player: Player,
        *,
        device_class: DeviceClass,
        device_token: str | None = None,
        settings: ClientSettings | None = None,
        clock: MonotonicClock | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self._client = client
        self._player = player
        self.device_class = device_class
        self.device_token = device_token
        self._clock = clock or MonotonicClock()
        self.cache = StatusCache(self.settings.effective_cache_seconds, self._clock)

        self.state = PollerState.IDLE
        self.session_id: uuid.UUID | None = None
        self.hard_failures = 0
        self.status_requests = 0
        self._inflight: asyncio.Future[StatusResult] | None = None
        self._task: asyncio.Task | None = None

    # ── Transitions ──────────────────────────────────────────────────

    async def play(self) -> bool:
        """
        Ask the coordinator for playback and start the local player only
        if admitted.  Returns True when playing.
        """
        if self.state is PollerState.PLAYING:
            return True
        try:
            started = await self._client.start_session(self.device_class, self.device_token)
        except SessionRejected as exc:
            logger.info("Start rejected: %s client owns playback", exc.owner_class.value)
            self._enter_blocked(conflict_notice(exc.owner_class))
            return False
        except CoordinatorClientError as exc:
            # No fail-open for starts: without a session id there is no playback.
            logger.warning("Start failed, not playing: %s", exc)
            self._player.notify(TRY_AGAIN_NOTICE)
            return False

        self.session_id = started.session_id
        self.state = PollerState.PLAYING
        self.hard_failures = 0
        self.cache.clear()
        self._player.start()
        logger.info("Playing under session %s", self.session_id)
        return True

    def _enter_blocked(self, notice: str) -> None:
        was_playing = self.state is PollerState.PLAYING
        self.state = PollerState.BLOCKED
        self.cache.clear()
        if was_playing:
            self._player.pause()
        self._player.notify(notice)

    async def stop(self) -> None:
        """
        Local user stop.  Ends the server session only when this client
        still owns it (PLAYING); a BLOCKED client leaves it alone.
        """
        await self._cancel_loop()
        if self.state is PollerState.PLAYING and self.session_id is not None:
            try:
                await self._client.end_session(self.session_id)
            except CoordinatorClientError as exc:
                logger.warning("End session %s failed: %s", self.session_id, exc)
            self._player.pause()
        self.state = PollerState.IDLE
        self.session_id = None
        self.hard_failures = 0
        self.cache.clear()

    # ── Status polling ───────────────────────────────────────────────

    async def _fetch_status(self) -> StatusResult:
        self.status_requests += 1
        result = await self._client.status(self.device_class, self.session_id)
        self.cache.put(result)
        return result

    async def check_status(self) -> StatusResult:
        """Cached StatusCheck; concurrent callers share one round trip."""
        cached = self.cache.get()
        if cached is not None:
            return cached
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._fetch_status())
        return await asyncio.shield(self._inflight)

    async def tick(self) -> PollerState:
        """One poll.  A no-op unless PLAYING."""
        if self.state is not PollerState.PLAYING:
            return self.state
        try:
            result = await self.check_status()
        except ConnectivityLost as exc:
            self.hard_failures += 1
            if self.hard_failures >= self.settings.HARD_FAILURE_THRESHOLD:
                logger.error("Coordinator unreachable %d times, pausing: %s", self.hard_failures, exc)
                self._enter_blocked(CONNECTION_LOST_NOTICE)
            else:
                logger.warning("Coordinator unreachable, still playing: %s", exc)
            return self.state
        except CoordinatorClientError as exc:
            logger.warning("Status check failed, assuming no conflict: %s", exc)
            return self.state

        self.hard_failures = 0
        if self.state is PollerState.PLAYING and result.has_conflict:
            logger.info("Conflict detected: %s client owns playback", result.owner_class)
            self._enter_blocked(conflict_notice(result.owner_class))
        return self.state

    async def run(self) -> None:
        """Poll every interval until the poller leaves PLAYING."""
        while self.state is PollerState.PLAYING:
            await self._clock.sleep(self.settings.POLL_INTERVAL_SECONDS)
            await self.tick()

    def start_polling(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="playback-poller")

    async def _cancel_loop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
