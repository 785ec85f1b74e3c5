"""Ledger adapters: the lock/claim/refund capability of each chain."""

from atomicswap.chains.base import (
    HashLockInUseError,
    InvalidSecretError,
    LedgerAdapter,
    LedgerAdapterError,
    LockClaimedError,
    LockExpiredError,
    LockReceipt,
    LockRefundedError,
    LockRejectedError,
    LockStatus,
    TimelockActiveError,
    TransientLedgerError,
    UnknownLockError,
)
from atomicswap.chains.dry_run import DryRunLedgerAdapter
from atomicswap.chains.factory import AdapterRegistry, UnsupportedChainError, create_default_registry

__all__ = [
    "LedgerAdapter",
    "LockReceipt",
    "LockStatus",
    # Errors
    "LedgerAdapterError",
    "TransientLedgerError",
    "HashLockInUseError",
    "LockRejectedError",
    "UnknownLockError",
    "InvalidSecretError",
    "LockExpiredError",
    "LockRefundedError",
    "LockClaimedError",
    "TimelockActiveError",
    "UnsupportedChainError",
    # Implementations
    "DryRunLedgerAdapter",
    "AdapterRegistry",
    "create_default_registry",
]
