"""
Per-user asyncio locks.

One lock per user currently inside a critical section — never a global
lock, so independent users never wait on each other.  Entries are
reference-counted and dropped as soon as nobody holds or awaits them,
keeping the table bounded by the number of in-flight users.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class UserLockTable:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._refs[user_id] = self._refs.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._refs[user_id] - 1
            if remaining:
                self._refs[user_id] = remaining
            else:
                self._refs.pop(user_id, None)
                self._locks.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._locks)
