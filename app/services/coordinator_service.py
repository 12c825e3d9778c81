"""
Playback coordinator — the only writer of the heartbeat store and the
session registry.

Handles:
- StartSession   resolve → (reject | preempt + open), atomically per user
- EndSession     idempotent natural close
- Heartbeat      desktop liveness beat (+ activity on its bound session)
- StatusCheck    read-only conflict check used by polling clients
- ForceCleanup   close everything & forget every device for one user
- Sweep          expire stale heartbeats, close abandoned sessions

Concurrency rules:
- Writers for one user run inside that user's lock, and the lock spans
  the commit, so two concurrent starts can never both leave a session
  open.  Different users never contend.
- Nothing awaits network I/O while holding a lock: accounting events are
  published after the commit and after the lock is released, and
  subscribers run as background tasks that no response waits on.
- StatusCheck takes no lock and never writes.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.core.config import Settings
from app.core.errors import BusinessConflict, ClientMisuse, SessionNotFound, storage_errors
from app.core.locks import UserLockTable
from app.models.session import ClosedReason, DeviceClass, PlaybackSession
from app.services import heartbeat_service, session_service
from app.services.conflict_resolver import (
    ConflictSnapshot,
    Decision,
    SessionView,
    StatusView,
    evaluate_status,
    is_duplicate_start,
    resolve,
)
from app.services.session_events import SessionClosed, SessionEventBus, SessionOpened

logger = logging.getLogger(__name__)

RECENT_SESSIONS_WINDOW = timedelta(hours=1)


@dataclass(frozen=True)
class StartResult:
    session_id: uuid.UUID
    reused: bool = False
    preempted_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass(frozen=True)
class CleanupResult:
    closed_sessions: int
    expired_devices: int


@dataclass(frozen=True)
class SweepResult:
    expired_devices: int
    abandoned_sessions: int


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise ClientMisuse(f"Missing {name}")
    return str(value)


class PlaybackCoordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock | None = None,
        events: SessionEventBus | None = None,
        locks: UserLockTable | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or Clock()
        self.events = events or SessionEventBus()
        self.locks = locks or UserLockTable()

    # ── Helpers ──────────────────────────────────────────────────────

    @property
    def _ttl(self) -> float:
        return float(self.settings.LIVENESS_TTL_SECONDS)

    @asynccontextmanager
    async def _unit_of_work(self, operation: str, db: AsyncSession) -> AsyncIterator[None]:
        """Commit on success; roll back and translate storage errors on failure."""
        with storage_errors(operation):
            try:
                yield
                await db.commit()
            except BaseException:
                await db.rollback()
                raise

    async def _owner_live(
        self,
        sess: PlaybackSession,
        now: datetime,
        db: AsyncSession,
    ) -> bool:
        """Liveness of the device backing a desktop session."""
        if sess.device_token:
            return await heartbeat_service.is_live(
                sess.device_token, now, self._ttl, db, sweep=False,
            )
        # Session started without a token: any live desktop of the user counts.
        tokens = await heartbeat_service.live_tokens_for_user(sess.user_id, now, self._ttl, db)
        return bool(tokens)

    async def _snapshot(
        self,
        user_id: str,
        now: datetime,
        db: AsyncSession,
    ) -> ConflictSnapshot:
        current = await session_service.find_open(user_id, db)
        if current is None:
            return ConflictSnapshot(open_session=None)
        owner_live = False
        if current.device_class is DeviceClass.DESKTOP:
            owner_live = await self._owner_live(current, now, db)
        return ConflictSnapshot(
            open_session=SessionView.from_model(current),
            owner_live=owner_live,
        )

    async def _publish_closed(self, sessions: list[PlaybackSession]) -> None:
        for sess in sessions:
            await self.events.publish_closed(SessionClosed.from_model(sess))

    # ── StartSession ─────────────────────────────────────────────────

    async def start_session(
        self,
        user_id: str,
        device_class: DeviceClass,
        db: AsyncSession,
        device_token: str | None = None,
    ) -> StartResult:
        """
        Admit, preempt or reject a playback start for *user_id*.

        Raises BusinessConflict when a live desktop session owns
        playback and a web client asks.  No session id is issued then.
        """
        user_id = _require(user_id, "user id")
        if device_token is not None:
            device_token = _require(device_token, "device token")

        closed: list[PlaybackSession] = []
        opened: PlaybackSession | None = None
        decision: Decision | None = None
        result: StartResult | None = None

        async with self.locks.hold(user_id):
            async with self._unit_of_work("start_session", db):
                now = self.clock.now()
                # Delete-before-read: stale heartbeats and abandoned
                # sessions must not influence the decision.
                await heartbeat_service.expire(now - timedelta(seconds=self._ttl), db)
                closed.extend(
                    await session_service.sweep_abandoned(
                        self.settings.ABANDON_AFTER_SECONDS, now, db, user_id=user_id,
                    )
                )

                snapshot = await self._snapshot(user_id, now, db)

                if is_duplicate_start(
                    snapshot,
                    device_class,
                    device_token,
                    now,
                    self.settings.START_DEDUP_SECONDS,
                ):
                    result = StartResult(
                        session_id=snapshot.open_session.session_id,
                        reused=True,
                    )
                else:
                    decision = resolve(snapshot, device_class)
                    if decision.admitted:
                        opened, preempted = await session_service.open_session(
                            user_id, device_class, device_token, now, db,
                        )
                        closed.extend(preempted)
                        if device_class is DeviceClass.DESKTOP and device_token:
                            # Starting playback is itself a liveness signal.
                            await heartbeat_service.beat(device_token, user_id, now, db)
                        result = StartResult(
                            session_id=opened.id,
                            preempted_ids=[s.id for s in preempted],
                        )

        await self._publish_closed(closed)

        if result is None:
            logger.info(
                "Rejected %s start for user %s: %s session is active",
                device_class.value,
                user_id,
                decision.owner_class.value,
            )
            raise BusinessConflict(decision.owner_class)

        if opened is not None:
            await self.events.publish_opened(
                SessionOpened(
                    session_id=opened.id,
                    user_id=user_id,
                    device_class=device_class,
                )
            )
        else:
            logger.info("Duplicate start for user %s reused session %s", user_id, result.session_id)
        return result

    # ── EndSession ───────────────────────────────────────────────────

    async def end_session(
        self,
        user_id: str,
        session_id: uuid.UUID,
        db: AsyncSession,
        reason: ClosedReason = ClosedReason.NATURAL,
    ) -> bool:
        """
        Close *session_id*.  Returns True if this call closed it, False
        if it was already closed.  Unknown ids, and ids owned by another
        user, raise SessionNotFound.
        """
        user_id = _require(user_id, "user id")
        closed: PlaybackSession | None = None
        found = False

        async with self.locks.hold(user_id):
            async with self._unit_of_work("end_session", db):
                sess = await session_service.get_session(session_id, db)
                if sess is not None and sess.user_id == user_id:
                    found = True
                    closed = await session_service.close_session(
                        session_id, reason, self.clock.now(), db,
                    )

        if not found:
            raise SessionNotFound("Session not found")
        if closed is None:
            return False
        await self._publish_closed([closed])
        return True

    # ── Heartbeat ────────────────────────────────────────────────────

    async def heartbeat(self, user_id: str, device_token: str, db: AsyncSession) -> None:
        """Record a desktop beat and mark its open session as active."""
        user_id = _require(user_id, "user id")
        device_token = _require(device_token, "device token")
        async with self._unit_of_work("heartbeat", db):
            now = self.clock.now()
            await heartbeat_service.expire(now - timedelta(seconds=self._ttl), db)
            await heartbeat_service.beat(device_token, user_id, now, db)
            await session_service.touch_device_sessions(user_id, device_token, now, db)

    async def release_device(self, user_id: str, device_token: str, db: AsyncSession) -> bool:
        """Graceful desktop shutdown — liveness lapses immediately."""
        user_id = _require(user_id, "user id")
        device_token = _require(device_token, "device token")
        async with self._unit_of_work("release_device", db):
            released = await heartbeat_service.release(device_token, user_id, db)
        if released:
            logger.info("Device %s released by user %s", device_token, user_id)
        return released

    # ── StatusCheck ──────────────────────────────────────────────────

    async def status_check(
        self,
        user_id: str,
        device_class: DeviceClass,
        db: AsyncSession,
        session_id: uuid.UUID | None = None,
    ) -> StatusView:
        """Read-only: never writes, never takes a lock."""
        user_id = _require(user_id, "user id")
        with storage_errors("status_check"):
            snapshot = await self._snapshot(user_id, self.clock.now(), db)
        return evaluate_status(snapshot, device_class, session_id)

    # ── ForceCleanup ─────────────────────────────────────────────────

    async def force_cleanup(self, user_id: str, db: AsyncSession) -> CleanupResult:
        """
        Administrative escape hatch: close every open session and expire
        every liveness record of *user_id*.  Safe to call repeatedly.
        """
        user_id = _require(user_id, "user id")
        async with self.locks.hold(user_id):
            async with self._unit_of_work("force_cleanup", db):
                closed = await session_service.close_all_for_user(
                    user_id, ClosedReason.ABANDONED, self.clock.now(), db,
                )
                expired = await heartbeat_service.expire_user(user_id, db)

        logger.info(
            "Force cleanup for user %s closed %d session(s), expired %d device(s)",
            user_id,
            len(closed),
            expired,
        )
        await self._publish_closed(closed)
        return CleanupResult(closed_sessions=len(closed), expired_devices=expired)

    # ── Listing & sweeping ───────────────────────────────────────────

    async def list_sessions(self, user_id: str, db: AsyncSession) -> list[PlaybackSession]:
        user_id = _require(user_id, "user id")
        with storage_errors("list_sessions"):
            since = self.clock.now() - RECENT_SESSIONS_WINDOW
            return await session_service.list_recent_sessions(user_id, since, db)

    async def sweep(self, db: AsyncSession) -> SweepResult:
        """Expire stale heartbeats and close abandoned sessions for all users."""
        async with self._unit_of_work("sweep", db):
            now = self.clock.now()
            expired = await heartbeat_service.expire(now - timedelta(seconds=self._ttl), db)
            abandoned = await session_service.sweep_abandoned(
                self.settings.ABANDON_AFTER_SECONDS, now, db,
            )

        if abandoned:
            logger.info("Sweep closed %d abandoned session(s)", len(abandoned))
        await self._publish_closed(abandoned)
        return SweepResult(expired_devices=expired, abandoned_sessions=len(abandoned))
