"""
Desktop heartbeat — proves the desktop process is alive.

Beats once on start and then every `HEARTBEAT_INTERVAL_SECONDS` for as
long as the process runs, playing or not: desktop precedence lasts
exactly as long as these beats keep arriving.  On graceful shutdown the
device token is released so web clients are unblocked immediately
instead of after the liveness TTL.
"""

import asyncio
import logging

from app.client.clock import MonotonicClock
from app.client.config import ClientSettings
from app.client.coordinator_client import CoordinatorClient, CoordinatorClientError

logger = logging.getLogger(__name__)


class DesktopHeartbeat:
    def __init__(
        self,
        client: CoordinatorClient,
        device_token: str,
        *,
        settings: ClientSettings | None = None,
        clock: MonotonicClock | None = None,
    ) -> None:
        if not device_token:
            raise ValueError("device_token is required")
        self.settings = settings or ClientSettings()
        self._client = client
        self.device_token = device_token
        self._clock = clock or MonotonicClock()
        self._task: asyncio.Task | None = None
        self.beats_sent = 0
        self.failures = 0

    async def beat_once(self) -> bool:
        try:
            await self._client.heartbeat(self.device_token)
        except CoordinatorClientError as exc:
            self.failures += 1
            logger.warning("Heartbeat for %s failed: %s", self.device_token, exc)
            return False
        self.beats_sent += 1
        return True

    async def run(self) -> None:
        while True:
            await self.beat_once()
            await self._clock.sleep(self.settings.HEARTBEAT_INTERVAL_SECONDS)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="desktop-heartbeat")
            logger.info("Heartbeat started for %s", self.device_token)

    async def shutdown(self) -> None:
        """Stop beating and release the device token."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._client.release_device(self.device_token)
        except CoordinatorClientError as exc:
            # Liveness lapses on its own after the TTL.
            logger.warning("Release of %s failed: %s", self.device_token, exc)
        else:
            logger.info("Device %s released", self.device_token)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
