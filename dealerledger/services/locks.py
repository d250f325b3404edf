"""
Per-key asyncio locks.

Mutations against one booking or one on-account receipt are serialised inside
this process; the version counters on the documents catch writers in other
processes.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLock:
    """A registry of asyncio.Lock objects created on demand, one per key."""

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._holders[key] -= 1
        if self._holders[key] == 0:
            # nobody holds or waits on it any more
            del self._holders[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str):
        """Acquire the locks for every key, in sorted order to avoid deadlocks."""
        ordered = sorted({str(k) for k in keys if k is not None})
        acquired = []
        try:
            for key in ordered:
                lock = self._acquire_ref(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._release_ref(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(str(key))
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


booking_locks = KeyedLock("booking")
receipt_locks = KeyedLock("on_account_receipt")
commission_locks = KeyedLock("commission_period")