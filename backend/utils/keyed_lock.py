"""
Keyed Lock

One exclusive asyncio lock per key (session id). Requests for the same key
queue behind each other in arrival order; different keys never contend.
Idle locks are dropped so the table does not grow with every session ever seen.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLock:
    """Per-key mutual exclusion for coroutines on a single event loop"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        """
        Hold the lock for ``key`` for the duration of the block.

        Example:
            async with locks.hold(session_id):
                ...
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
