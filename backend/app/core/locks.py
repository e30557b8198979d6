############################################################
#
# clawster - Confidential Bot Hosting Orchestrator
#
# locks.py: Per-bot advisory locks for lifecycle transitions
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Per-key asyncio locks.

At most one deploy, reconcile, or terminate runs per bot at a time.
Deploy and terminate wait for the lock; reconciliation uses try_lock and
simply skips when another operation holds it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from backend.app.logging_config import get_logger

logger = get_logger(__name__)


class KeyedLockManager:
    """Hands out one asyncio.Lock per key, dropping idle entries."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._guard = asyncio.Lock()

    async def _checkout(self, key: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._waiters[key] = self._waiters.get(key, 0) + 1
            return lock

    async def _checkin(self, key: str) -> None:
        async with self._guard:
            remaining = self._waiters.get(key, 1) - 1
            if remaining <= 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._waiters[key] = remaining

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Wait for and hold the lock for ``key``."""
        lock = await self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            await self._checkin(key)

    @asynccontextmanager
    async def try_lock(self, key: str) -> AsyncIterator[bool]:
        """
        Hold the lock for ``key`` only if it is free right now.

        Yields True when acquired, False when another holder has it.
        """
        lock = await self._checkout(key)
        acquired = False
        try:
            if not lock.locked():
                await lock.acquire()
                acquired = True
            else:
                logger.debug("lock_contended", key=key)
            yield acquired
        finally:
            if acquired:
                lock.release()
            await self._checkin(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
