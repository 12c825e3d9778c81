"""
Session registry — CRUD & lifecycle helpers for playback sessions.

Handles:
- Finding the user's single open session (for conflict checks)
- Opening a session (closing any open one as PREEMPTED first)
- Closing sessions idempotently (natural end, preemption, cleanup)
- Sweeping abandoned sessions whose client vanished without closing

These helpers never lock and never commit — the coordinator wraps them
in its per-user critical section and owns the transaction.
"""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.session import ClosedReason, DeviceClass, PlaybackSession


async def find_open(
    user_id: str,
    db: AsyncSession,
) -> PlaybackSession | None:
    """Return the user's open session, if any."""
    stmt = (
        select(PlaybackSession)
        .where(
            PlaybackSession.user_id == user_id,
            PlaybackSession.ended_at.is_(None),
        )
        .order_by(PlaybackSession.started_at.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_session(
    session_id: uuid.UUID,
    db: AsyncSession,
) -> PlaybackSession | None:
    return await db.get(PlaybackSession, session_id)


async def _close_each(
    candidate_ids: list[uuid.UUID],
    reason: ClosedReason,
    now: datetime,
    db: AsyncSession,
) -> list[PlaybackSession]:
    closed: list[PlaybackSession] = []
    for session_id in candidate_ids:
        sess = await close_session(session_id, reason, now, db)
        if sess is not None:
            closed.append(sess)
    return closed


async def _close_open_sessions(
    user_id: str,
    reason: ClosedReason,
    now: datetime,
    db: AsyncSession,
) -> list[PlaybackSession]:
    stmt = select(PlaybackSession.id).where(
        PlaybackSession.user_id == user_id,
        PlaybackSession.ended_at.is_(None),
    )
    result = await db.execute(stmt)
    closed = await _close_each(list(result.scalars().all()), reason, now, db)
    await db.flush()
    return closed


async def open_session(
    user_id: str,
    device_class: DeviceClass,
    device_token: str | None,
    now: datetime,
    db: AsyncSession,
) -> tuple[PlaybackSession, list[PlaybackSession]]:
    """
    Open a new session for *user_id*.

    Any open session is closed as PREEMPTED and flushed *before* the new
    row is inserted, so the one-open-session index never sees two.
    Returns ``(new_session, preempted_sessions)``.
    """
    preempted = await _close_open_sessions(user_id, ClosedReason.PREEMPTED, now, db)

    new_session = PlaybackSession(
        id=uuid.uuid4(),
        user_id=user_id,
        device_class=device_class,
        device_token=device_token,
        started_at=now,
        last_seen_at=now,
    )
    db.add(new_session)
    await db.flush()
    return new_session, preempted


async def close_session(
    session_id: uuid.UUID,
    reason: ClosedReason,
    now: datetime,
    db: AsyncSession,
) -> PlaybackSession | None:
    """
    Close a single session.

    Returns the session only if *this* call closed it.  Closing an
    already-closed session is a no-op (returns None) — "video ended"
    and "conflict detected" paths race on the same id.  The conditional
    UPDATE means a terminal row is never rewritten, whichever closer
    loses the race.
    """
    stmt = (
        update(PlaybackSession)
        .where(
            PlaybackSession.id == session_id,
            PlaybackSession.ended_at.is_(None),
        )
        .values(ended_at=now, closed_reason=reason)
    )
    result = await db.execute(stmt)
    if not result.rowcount:
        return None
    sess = await db.get(PlaybackSession, session_id)
    return sess


async def close_all_for_user(
    user_id: str,
    reason: ClosedReason,
    now: datetime,
    db: AsyncSession,
) -> list[PlaybackSession]:
    """Close every open session for a given user (force cleanup)."""
    return await _close_open_sessions(user_id, reason, now, db)


async def sweep_abandoned(
    max_age_seconds: float,
    now: datetime,
    db: AsyncSession,
    user_id: str | None = None,
) -> list[PlaybackSession]:
    """
    Close open sessions with no activity for *max_age_seconds*.

    Bounds how long a crashed browser or force-quit desktop can block a
    legitimate new session.  Pass *user_id* to sweep a single user.
    """
    cutoff = now - timedelta(seconds=max_age_seconds)
    stmt = select(PlaybackSession.id).where(
        PlaybackSession.ended_at.is_(None),
        PlaybackSession.last_seen_at < cutoff,
    )
    if user_id is not None:
        stmt = stmt.where(PlaybackSession.user_id == user_id)
    result = await db.execute(stmt)
    return await _close_each(
        list(result.scalars().all()), ClosedReason.ABANDONED, now, db,
    )


async def touch_device_sessions(
    user_id: str,
    device_token: str,
    now: datetime,
    db: AsyncSession,
) -> int:
    """Bump `last_seen_at` on the open session bound to *device_token*."""
    stmt = (
        update(PlaybackSession)
        .where(
            PlaybackSession.user_id == user_id,
            PlaybackSession.device_token == device_token,
            PlaybackSession.ended_at.is_(None),
        )
        .values(last_seen_at=now)
    )
    result = await db.execute(stmt)
    return result.rowcount or 0


async def list_recent_sessions(
    user_id: str,
    since: datetime,
    db: AsyncSession,
    limit: int = 50,
) -> list[PlaybackSession]:
    """Sessions started by *user_id* since *since*, newest first."""
    stmt = (
        select(PlaybackSession)
        .where(
            PlaybackSession.user_id == user_id,
            PlaybackSession.started_at >= since,
        )
        .order_by(PlaybackSession.started_at.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
