"""Per-key async locks."""

import asyncio
import weakref
from contextlib import asynccontextmanager


class UserLockRegistry:
    """Hands out one ``asyncio.Lock`` per user id.

    Locks are held weakly, so a user's lock disappears once nobody is
    waiting on or holding it.
    """

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self.lock_for(user_id)
        async with lock:
            yield

    def __len__(self):
        return len(self._locks)
