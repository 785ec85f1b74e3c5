"""Utility modules for atomicswap."""

from datetime import datetime, timezone

from atomicswap.utils.locks import KeyedLock, LockTimeoutError
from atomicswap.utils.retry import backoff_delay, retry_async


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = ["KeyedLock", "LockTimeoutError", "backoff_delay", "retry_async", "utcnow"]
