"""
Deposit Lock Manager
Serializes mutations of a single deposit across the scheduler, request handlers
and gateway event handling. One asyncio lock per deposit id; acquisition is
bounded so no caller waits indefinitely.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from config import Config
from utils.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


class DepositLockManager:
    """
    In-process keyed lock manager

    Locks are created lazily per deposit id and dropped again once nobody holds
    or waits on them, so the table does not grow with the number of deposits.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.default_timeout = (
            timeout_seconds if timeout_seconds is not None else Config.DEPOSIT_LOCK_TIMEOUT_SECONDS
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

        self.metrics = {
            'locks_acquired': 0,
            'locks_released': 0,
            'lock_timeouts': 0,
            'lock_contentions': 0,
        }

    @asynccontextmanager
    async def lock(self, deposit_id: str, timeout_seconds: Optional[float] = None):
        """
        Hold the lock for ``deposit_id`` for the duration of the block

        Usage:
            async with lock_manager.lock(deposit.id):
                deposit = store.get(deposit.id)
                ...
                store.put(deposit)

        Raises:
            LockTimeoutError: the lock was not acquired within the timeout
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout
        lock = self._locks.setdefault(deposit_id, asyncio.Lock())
        self._waiters[deposit_id] = self._waiters.get(deposit_id, 0) + 1

        if lock.locked():
            self.metrics['lock_contentions'] += 1
            logger.debug(f"🔒 DEPOSIT_LOCK_CONTENTION: {deposit_id}")

        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            self.metrics['lock_timeouts'] += 1
            self._release_waiter(deposit_id)
            logger.error(f"❌ DEPOSIT_LOCK_TIMEOUT: {deposit_id} after {timeout}s")
            raise LockTimeoutError(deposit_id, timeout)

        self.metrics['locks_acquired'] += 1
        try:
            yield
        finally:
            lock.release()
            self.metrics['locks_released'] += 1
            self._release_waiter(deposit_id)

    def is_locked(self, deposit_id: str) -> bool:
        lock = self._locks.get(deposit_id)
        return lock is not None and lock.locked()

    def _release_waiter(self, deposit_id: str) -> None:
        remaining = self._waiters.get(deposit_id, 1) - 1
        if remaining <= 0:
            self._waiters.pop(deposit_id, None)
            self._locks.pop(deposit_id, None)
        else:
            self._waiters[deposit_id] = remaining
