"""Abstract ledger interface consumed by the swap engine.

Every participating chain is reached through a ``LedgerAdapter`` exposing a
hash-time-locked contract:

1. ``lock``   - escrow ``amount`` of an asset under a hash lock until a timelock
2. ``claim``  - release the escrow to the recipient by presenting the preimage
3. ``refund`` - return the escrow to the sender once the timelock has passed
4. ``query_lock`` - observe claim/refund state and confirmation depth

All three mutating calls must be idempotent under the same identifiers:
``lock`` under ``lock_id``, ``claim`` and ``refund`` under ``lock_ref``. A
repeated call that was already applied returns the original reference.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


class LedgerAdapterError(Exception):
    """Base error raised by ledger adapters."""

    retryable = False

    def __init__(self, message: str, chain: Optional[str] = None):
        self.chain = chain
        super().__init__(message)


class TransientLedgerError(LedgerAdapterError):
    """RPC timeout, dropped connection, node behind - safe to retry."""

    retryable = True


class HashLockInUseError(LedgerAdapterError):
    """The hash lock is already bound to another lock on this chain."""


class LockRejectedError(LedgerAdapterError):
    """The ledger refused to create the lock (funds, asset, account)."""


class UnknownLockError(LedgerAdapterError):
    """No lock exists for the given reference."""


class InvalidSecretError(LedgerAdapterError):
    """The presented secret does not hash to the lock's hash lock."""


class LockExpiredError(LedgerAdapterError):
    """Claim attempted after the timelock passed."""


class LockRefundedError(LedgerAdapterError):
    """Claim attempted on a lock that was already refunded."""


class LockClaimedError(LedgerAdapterError):
    """Refund attempted on a lock that was already claimed."""


class TimelockActiveError(LedgerAdapterError):
    """Refund attempted before the timelock passed."""


@dataclass
class LockReceipt:
    """Result of a successful lock."""

    lock_ref: str
    tx_hash: str
    chain: str
    block_height: Optional[int] = None


@dataclass
class LockStatus:
    """On-ledger view of a lock."""

    lock_ref: str
    claimed: bool
    refunded: bool
    confirmations: int
    expired: bool = False  # chain's own timelock has passed
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    secret: Optional[str] = None  # preimage published by the claim, if the chain exposes it

    @property
    def settled(self) -> bool:
        return self.claimed or self.refunded


class LedgerAdapter(ABC):
    """Abstract base class for per-chain HTLC adapters."""

    @property
    @abstractmethod
    def chain(self) -> str:
        """Chain identifier (e.g. "ethereum")."""
        pass

    @abstractmethod
    async def lock(
        self,
        asset_id: str,
        amount: Decimal,
        hash_lock: str,
        timeout_at: datetime,
        *,
        account_id: str,
        recipient_id: str,
        lock_id: str,
    ) -> LockReceipt:
        """
        Escrow funds under a hash lock.

        Args:
            asset_id: Asset to lock
            amount: Amount to lock
            hash_lock: Hex SHA-256 of the swap secret
            timeout_at: Absolute timelock (UTC); refundable afterwards
            account_id: Sender account whose funds are locked
            recipient_id: Account that may claim with the secret
            lock_id: Idempotency key; re-issuing returns the same receipt

        Returns:
            LockReceipt with the lock reference and transaction hash
        """
        pass

    @abstractmethod
    async def claim(self, lock_ref: str, secret: str) -> str:
        """Claim a lock with its secret. Returns the claim transaction reference."""
        pass

    @abstractmethod
    async def refund(self, lock_ref: str) -> str:
        """Refund an expired lock. Returns the refund transaction reference."""
        pass

    @abstractmethod
    async def query_lock(self, lock_ref: str) -> LockStatus:
        """Get the on-ledger status of a lock."""
        pass

    @abstractmethod
    async def get_balance(self, account_id: str, asset_id: str) -> Decimal:
        """Settled balance of an account, including amounts currently locked."""
        pass

    @abstractmethod
    async def get_locked_balance(self, account_id: str, asset_id: str) -> Decimal:
        """Amount of the settled balance currently held in unsettled locks."""
        pass
