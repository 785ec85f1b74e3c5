"""Concurrency control utilities for swaps and balance reservations.

Provides keyed exclusive sections: one owner per swap id, one per
(ledger, account, asset). Waiters are served in arrival order.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLock:
    """Registry of asyncio locks, one per key.

    Example:
        swap_locks = KeyedLock("swap")
        async with swap_locks.hold(swap_id, operation="lock_leg"):
            # Exclusive access to this swap
            ...
    """

    def __init__(self, name: str, timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            name: Label used in log messages
            timeout: Default maximum wait (None = wait forever)
        """
        self.name = name
        self.timeout = timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}
        # Holders plus waiters per key; the entry goes when this drops to zero
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        """Number of keys currently held or awaited."""
        return len(self._locks)

    def _checkout(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: Hashable) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        """Check whether a key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        key: Hashable,
        timeout: Optional[float] = None,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key (swap id, (ledger, account, asset) tuple, ...)
            timeout: Maximum wait, defaults to the registry timeout
            operation: Description for logging

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        lock = self._checkout(key)
        wait = self.timeout if timeout is None else timeout

        try:
            if wait:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            self._checkin(key)
            logger.warning(f"{self.name} lock timeout for {key} after {wait}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire {self.name} lock for {key} within {wait}s"
            )
        except BaseException:
            self._checkin(key)
            raise

        logger.debug(f"{self.name} lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)
            logger.debug(f"{self.name} lock released for {key}: {operation}")
