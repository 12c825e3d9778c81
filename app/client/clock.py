"""Monotonic time source for client loops (tests substitute a manual one)."""

import asyncio
import time


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
