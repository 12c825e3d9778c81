"""
Background sweeper — periodic heartbeat expiry + abandoned-session close.

Liveness reads already expire stale rows lazily; the sweeper makes sure
abandoned sessions are closed (and accounting hears about it) even when
the affected user never comes back.  A failed pass is logged and the
loop carries on.
"""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import CoordinatorError
from app.services.coordinator_service import PlaybackCoordinator, SweepResult

logger = logging.getLogger(__name__)


class SessionSweeper:
    def __init__(
        self,
        coordinator: PlaybackCoordinator,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        interval_s: float,
    ) -> None:
        self._coordinator = coordinator
        self._session_factory = session_factory
        self.interval_s = max(1.0, float(interval_s))
        self._task: asyncio.Task | None = None

    async def run_once(self) -> SweepResult:
        async with self._session_factory() as db:
            return await self._coordinator.sweep(db)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.run_once()
            except CoordinatorError as exc:
                logger.warning("Sweep pass failed: %s", exc.detail)
            except Exception:
                logger.exception("Sweep pass crashed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="session-sweeper")
            logger.info("Session sweeper started (every %.0fs)", self.interval_s)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
