"""
Heartbeat store — server-held "this desktop device is alive" facts.

Pure storage + TTL queries, no business rules:
- `beat` upserts `last_beat = now` (unknown token = first beat).  A token
  belongs to one user at a time; callers expire stale rows first, so a
  token only changes hands after its previous owner stopped beating.
- Reads expire stale rows first (delete-before-read) so a separate
  background thread is not strictly required; the sweeper does the
  same thing on a timer.
- Tokens are matched exactly — no prefix or fuzzy matching.
"""

from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DeviceTokenInUse
from app.models.liveness import LivenessRecord


async def beat(
    device_token: str,
    user_id: str,
    now: datetime,
    db: AsyncSession,
) -> LivenessRecord:
    """
    Record a heartbeat for *device_token*.

    Raises DeviceTokenInUse when the token is held by another user.
    """
    record = await db.get(LivenessRecord, device_token)
    if record is None:
        record = LivenessRecord(device_token=device_token, user_id=user_id, last_beat=now)
        db.add(record)
    elif record.user_id != user_id:
        raise DeviceTokenInUse("Device token is registered to another user")
    else:
        record.last_beat = now
    await db.flush()
    return record


async def expire(older_than: datetime, db: AsyncSession) -> int:
    """Delete every record whose last beat is older than *older_than*."""
    stmt = delete(LivenessRecord).where(LivenessRecord.last_beat < older_than)
    result = await db.execute(stmt)
    return result.rowcount or 0


async def is_live(
    device_token: str,
    now: datetime,
    ttl_seconds: float,
    db: AsyncSession,
    *,
    sweep: bool = True,
) -> bool:
    """
    True if *device_token* beat within the last *ttl_seconds*.

    `sweep=False` skips the delete-before-read step; read-only callers
    (status checks) use it so they never write.
    """
    cutoff = now - timedelta(seconds=ttl_seconds)
    if sweep:
        await expire(cutoff, db)
    stmt = select(LivenessRecord.device_token).where(
        LivenessRecord.device_token == device_token,
        LivenessRecord.last_beat > cutoff,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def live_tokens_for_user(
    user_id: str,
    now: datetime,
    ttl_seconds: float,
    db: AsyncSession,
) -> list[str]:
    """Device tokens of *user_id* that are currently live (read-only)."""
    cutoff = now - timedelta(seconds=ttl_seconds)
    stmt = select(LivenessRecord.device_token).where(
        LivenessRecord.user_id == user_id,
        LivenessRecord.last_beat > cutoff,
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def release(device_token: str, user_id: str, db: AsyncSession) -> bool:
    """Graceful shutdown — drop the record immediately instead of waiting for the TTL."""
    stmt = delete(LivenessRecord).where(
        LivenessRecord.device_token == device_token,
        LivenessRecord.user_id == user_id,
    )
    result = await db.execute(stmt)
    return bool(result.rowcount)


async def expire_user(user_id: str, db: AsyncSession) -> int:
    """Delete every liveness record belonging to *user_id*."""
    stmt = delete(LivenessRecord).where(LivenessRecord.user_id == user_id)
    result = await db.execute(stmt)
    return result.rowcount or 0
