"""
Session lifecycle events — the coordinator's single publish point.

The watch-time / ad-accounting service subscribes here to learn when
playback starts and stops; the coordinator itself never computes
minutes or rewards.  Events are published only after the transaction
that produced them has committed.

Subscribers may be plain functions or coroutines.  Each delivery runs
as its own background task, so publishing returns at once and a slow or
failing subscriber never holds up a coordinator response.  Failures are
logged.  `drain()` waits for in-flight deliveries on shutdown.
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.models.session import ClosedReason, DeviceClass, PlaybackSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionOpened:
    session_id: uuid.UUID
    user_id: str
    device_class: DeviceClass

    def as_dict(self) -> dict[str, Any]:
        return {
            "event": "session.opened",
            "sessionId": str(self.session_id),
            "userId": self.user_id,
            "deviceClass": self.device_class.value,
        }


@dataclass(frozen=True)
class SessionClosed:
    session_id: uuid.UUID
    user_id: str
    reason: ClosedReason
    duration_seconds: int

    @classmethod
    def from_model(cls, sess: PlaybackSession) -> "SessionClosed":
        return cls(
            session_id=sess.id,
            user_id=sess.user_id,
            reason=sess.closed_reason,
            duration_seconds=sess.duration_seconds(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "event": "session.closed",
            "sessionId": str(self.session_id),
            "userId": self.user_id,
            "reason": self.reason.value,
            "durationSeconds": self.duration_seconds,
        }


Subscriber = Callable[[Any], Awaitable[None] | None]


class SessionEventBus:
    def __init__(self) -> None:
        self._opened: list[Subscriber] = []
        self._closed: list[Subscriber] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe_opened(self, callback: Subscriber) -> None:
        self._opened.append(callback)

    def subscribe_closed(self, callback: Subscriber) -> None:
        self._closed.append(callback)

    async def publish_opened(self, event: SessionOpened) -> None:
        logger.info(
            "Session %s opened for user %s on %s",
            event.session_id,
            event.user_id,
            event.device_class.value,
        )
        await self._dispatch(self._opened, event)

    async def publish_closed(self, event: SessionClosed) -> None:
        logger.info(
            "Session %s closed (%s) after %ss",
            event.session_id,
            event.reason.value,
            event.duration_seconds,
        )
        await self._dispatch(self._closed, event)

    async def _dispatch(self, subscribers: list[Subscriber], event: Any) -> None:
        for callback in list(subscribers):
            task = asyncio.create_task(self._deliver(callback, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _deliver(callback: Subscriber, event: Any) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Session event subscriber %r failed", callback)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout_s: float | None = None) -> None:
        """Wait for in-flight deliveries; cancel whatever outlives *timeout_s*."""
        if not self._pending:
            return
        _, still_running = await asyncio.wait(set(self._pending), timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Dropped %d undelivered session event(s)", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
