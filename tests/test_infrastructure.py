import asyncio

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError

from app.core.errors import (
    BusinessConflict,
    DeviceTokenInUse,
    HardInfra,
    SessionNotFound,
    TransientInfra,
    storage_errors,
)
from app.core.locks import UserLockTable
from app.models.session import DeviceClass
from app.services.coordinator_service import PlaybackCoordinator
from app.services.sweeper import SessionSweeper


# ── Error taxonomy ───────────────────────────────────────────────────
@pytest.mark.parametrize(
    "raised, expected",
    [
        (OperationalError("SELECT 1", {}, Exception("database is locked")), TransientInfra),
        (IntegrityError("INSERT", {}, Exception("unique")), TransientInfra),
        (DBAPIError("SELECT 1", {}, Exception("boom")), HardInfra),
        (SQLAlchemyError("mapper trouble"), HardInfra),
    ],
)
def test_storage_errors_are_classified(raised, expected) -> None:
    with pytest.raises(expected) as info:
        with storage_errors("test"):
            raise raised
    assert info.value.__cause__ is raised


def test_invalidated_connection_is_transient() -> None:
    err = DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
    with pytest.raises(TransientInfra) as info:
        with storage_errors("test"):
            raise err
    assert info.value.retryable is True


def test_coordinator_errors_pass_through() -> None:
    with pytest.raises(BusinessConflict):
        with storage_errors("test"):
            raise BusinessConflict(DeviceClass.DESKTOP)


def test_status_codes() -> None:
    assert BusinessConflict(DeviceClass.WEB).status_code == 409
    assert TransientInfra("x").status_code == 503
    assert HardInfra("x").status_code == 500
    assert SessionNotFound("x").status_code == 404
    assert DeviceTokenInUse("x").status_code == 403


# ── Per-user locks ───────────────────────────────────────────────────
@pytest.mark.anyio
async def test_user_locks_serialize_one_user_only() -> None:
    locks = UserLockTable()
    order: list[str] = []
    gate = asyncio.Event()

    async def hold(user_id: str, tag: str) -> None:
        async with locks.hold(user_id):
            order.append(f"{tag}-in")
            if tag == "a1":
                await gate.wait()
            order.append(f"{tag}-out")

    first = asyncio.create_task(hold("a", "a1"))
    await asyncio.sleep(0)
    second = asyncio.create_task(hold("a", "a2"))
    other = asyncio.create_task(hold("b", "b1"))
    await asyncio.sleep(0)

    # b is not blocked by a; a2 waits for a1.
    assert "b1-out" in order
    assert "a2-in" not in order

    gate.set()
    await asyncio.gather(first, second, other)
    assert order.index("a1-out") < order.index("a2-in")
    assert len(locks) == 0


# ── Sweeper ──────────────────────────────────────────────────────────
@pytest.mark.anyio
async def test_sweeper_closes_abandoned_sessions(settings, clock, session_factory) -> None:
    coordinator = PlaybackCoordinator(settings, clock=clock)
    async with session_factory() as db:
        await coordinator.start_session("u1", DeviceClass.WEB, db)

    sweeper = SessionSweeper(coordinator, session_factory, interval_s=30)
    assert (await sweeper.run_once()).abandoned_sessions == 0

    clock.advance(settings.ABANDON_AFTER_SECONDS + 1)
    assert (await sweeper.run_once()).abandoned_sessions == 1


@pytest.mark.anyio
async def test_sweeper_start_and_stop(settings, clock, session_factory) -> None:
    sweeper = SessionSweeper(
        PlaybackCoordinator(settings, clock=clock), session_factory, interval_s=30,
    )
    sweeper.start()
    assert sweeper.running
    await sweeper.stop()
    assert not sweeper.running
