import uuid

import pytest

from app.models.session import ClosedReason, DeviceClass, PlaybackSession
from app.services import session_service


@pytest.mark.anyio
async def test_open_preempts_previous_session(session_factory, clock) -> None:
    async with session_factory() as db:
        first, preempted = await session_service.open_session(
            "u1", DeviceClass.WEB, None, clock.now(), db,
        )
        assert preempted == []

        second, preempted = await session_service.open_session(
            "u1", DeviceClass.DESKTOP, "D1", clock.advance(5), db,
        )
        await db.commit()

        assert [s.id for s in preempted] == [first.id]
        assert preempted[0].closed_reason is ClosedReason.PREEMPTED
        assert preempted[0].ended_at == clock.now()

    async with session_factory() as db:
        current = await session_service.find_open("u1", db)
        assert current is not None
        assert current.id == second.id
        assert current.device_token == "D1"


@pytest.mark.anyio
async def test_close_is_idempotent(session_factory, clock) -> None:
    async with session_factory() as db:
        sess, _ = await session_service.open_session("u1", DeviceClass.WEB, None, clock.now(), db)
        ended_at = clock.advance(60)
        closed = await session_service.close_session(sess.id, ClosedReason.NATURAL, ended_at, db)
        assert closed is not None
        assert closed.duration_seconds() == 60

        clock.advance(10)
        again = await session_service.close_session(sess.id, ClosedReason.ABANDONED, clock.now(), db)
        assert again is None
        await db.commit()

    async with session_factory() as db:
        stored = await db.get(PlaybackSession, sess.id)
        assert stored.closed_reason is ClosedReason.NATURAL
        assert stored.ended_at == ended_at


@pytest.mark.anyio
async def test_close_unknown_session_is_a_no_op(session_factory, clock) -> None:
    async with session_factory() as db:
        assert await session_service.close_session(
            uuid.uuid4(), ClosedReason.NATURAL, clock.now(), db,
        ) is None


@pytest.mark.anyio
async def test_sweep_closes_only_stale_sessions(session_factory, clock) -> None:
    async with session_factory() as db:
        stale, _ = await session_service.open_session("u1", DeviceClass.WEB, None, clock.now(), db)
        clock.advance(120)
        fresh, _ = await session_service.open_session("u2", DeviceClass.WEB, None, clock.now(), db)
        clock.advance(90)

        swept = await session_service.sweep_abandoned(180, clock.now(), db)
        await db.commit()

        assert [s.id for s in swept] == [stale.id]
        assert swept[0].closed_reason is ClosedReason.ABANDONED
        assert await session_service.find_open("u1", db) is None
        assert (await session_service.find_open("u2", db)).id == fresh.id


@pytest.mark.anyio
async def test_heartbeat_activity_keeps_desktop_session_alive(session_factory, clock) -> None:
    async with session_factory() as db:
        sess, _ = await session_service.open_session("u1", DeviceClass.DESKTOP, "D1", clock.now(), db)
        for _ in range(20):
            touched = await session_service.touch_device_sessions("u1", "D1", clock.advance(15), db)
            assert touched == 1

        assert await session_service.sweep_abandoned(180, clock.now(), db) == []
        assert (await session_service.find_open("u1", db)).id == sess.id


@pytest.mark.anyio
async def test_sweep_can_target_one_user(session_factory, clock) -> None:
    async with session_factory() as db:
        await session_service.open_session("u1", DeviceClass.WEB, None, clock.now(), db)
        await session_service.open_session("u2", DeviceClass.WEB, None, clock.now(), db)
        clock.advance(600)

        swept = await session_service.sweep_abandoned(180, clock.now(), db, user_id="u1")
        assert [s.user_id for s in swept] == ["u1"]
        assert await session_service.find_open("u2", db) is not None


@pytest.mark.anyio
async def test_close_all_and_recent_listing(session_factory, clock) -> None:
    async with session_factory() as db:
        for device_class in (DeviceClass.WEB, DeviceClass.DESKTOP, DeviceClass.WEB):
            await session_service.open_session("u1", device_class, None, clock.advance(1), db)

        closed = await session_service.close_all_for_user(
            "u1", ClosedReason.ABANDONED, clock.advance(1), db,
        )
        assert len(closed) == 1
        assert await session_service.close_all_for_user(
            "u1", ClosedReason.ABANDONED, clock.now(), db,
        ) == []

        recent = await session_service.list_recent_sessions("u1", clock.now().replace(year=2025), db)
        assert len(recent) == 3
        assert recent[0].started_at > recent[-1].started_at
        assert all(not s.is_open for s in recent)
