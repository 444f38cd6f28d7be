"""
Keyed Locks
===========

One asyncio.Lock per key (session id, project id), created on first use
and dropped again once no task holds or waits on it.
"""

import asyncio
from contextlib import asynccontextmanager


class KeyedLock:
    """Per-key mutual exclusion that does not grow with every key ever seen."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        # Holders and waiters both count, so the lock is never dropped under a waiter
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)
