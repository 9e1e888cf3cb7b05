"""Per-key mutual exclusion for read-then-write operations."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLocks:
    """
    A set of asyncio locks addressed by key.

    Locks are created on first use and dropped once nobody holds or waits on
    them, so the table only grows with concurrent activity.
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def subscription_key(subscriber: str, merchant: str) -> tuple[str, str, str]:
    return ("subscription", subscriber, merchant)


def debt_key(subscriber: str) -> tuple[str, str]:
    return ("debt", subscriber)


# Process-wide lock table shared by every service instance
locks = KeyedLocks()
