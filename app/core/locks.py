"""In-process mutual exclusion for subscription mutations.

Subscribe, payment confirmation, cancellation and usage all mutate the rows
of a single user, so they serialize on a per-user key. This only covers one
worker process; across processes the database constraints (partial unique
index, confirmation dedupe key, version column) are authoritative.
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Registry of asyncio locks keyed by an identifier.

    Locks are held weakly so idle keys do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._get(key)
        if lock.locked():
            logger.debug("Waiting for lock %s", key)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


user_locks = KeyedLocks()


def user_lock(user_id: uuid.UUID):
    return user_locks.hold(f"user:{user_id}")
