# treeledger/core/locks.py
"""
Per-user serialization of financial mutations.

Every ledger write for a user (posting, approval transition, batch credit)
runs inside userLocks.hold(userId). Locks for several users are taken in
ascending id order so two transfers in opposite directions cannot deadlock.
Row locks (SELECT ... FOR UPDATE) in the services cover multi-process setups.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """
    Lazily created asyncio.Lock per user id.

    A lock lives only while someone holds or waits for it, so the registry
    does not grow with the number of users ever touched.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    def _checkout(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        self._users[user_id] = self._users.get(user_id, 0) + 1
        return lock

    def _checkin(self, user_id: int) -> None:
        remaining = self._users.get(user_id, 1) - 1
        if remaining > 0:
            self._users[user_id] = remaining
            return
        self._users.pop(user_id, None)
        self._locks.pop(user_id, None)

    @asynccontextmanager
    async def hold(self, *user_ids: int):
        """
        Hold the locks of all given users.

        Usage:
            async with userLocks.hold(sender_id, recipient_id):
                ...
        """
        ordered = sorted({uid for uid in user_ids if uid is not None})
        checked_out = []
        acquired = []
        try:
            for user_id in ordered:
                lock = self._checkout(user_id)
                checked_out.append(user_id)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for user_id in checked_out:
                self._checkin(user_id)

    def clear(self) -> None:
        """Drop all idle locks (tests)."""
        idle = [uid for uid, lock in self._locks.items() if not lock.locked()]
        for uid in idle:
            del self._locks[uid]
            self._users.pop(uid, None)
        if idle:
            logger.debug(f"Dropped {len(idle)} idle user locks")


# Global instance
userLocks = UserLockRegistry()
