"""
Per-key asyncio locks that do not outlive their users.

A plain ``defaultdict(asyncio.Lock)`` keeps one lock per provider, pair or
conversation ever seen. KeyedLock drops an entry as soon as nobody holds it
or waits for it, so a long-running server only keeps locks for keys that
are busy right now.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLock:
    """
    Mutual exclusion per key.

    Example:
        locks = KeyedLock()
        async with locks.hold("p1"):
            ...  # only one holder of "p1" at a time
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks
