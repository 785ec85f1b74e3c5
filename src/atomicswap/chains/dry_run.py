"""Dry-run HTLC ledger for simulated swaps and tests.

Implements the full ``LedgerAdapter`` contract in memory: balances, hash
locks, timelocks, confirmations and idempotent lock/claim/refund. Nothing is
broadcast anywhere.
"""

import asyncio
import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from atomicswap.chains.base import (
    HashLockInUseError,
    InvalidSecretError,
    LedgerAdapter,
    LockClaimedError,
    LockExpiredError,
    LockReceipt,
    LockRefundedError,
    LockRejectedError,
    LockStatus,
    TimelockActiveError,
    UnknownLockError,
)
from atomicswap.utils import utcnow

logger = logging.getLogger(__name__)


def _digest(*parts: str) -> str:
    return hashlib.sha256(":".join(parts).encode()).hexdigest()


def _hash_secret(secret: str) -> Optional[str]:
    try:
        return hashlib.sha256(bytes.fromhex(secret)).hexdigest()
    except (ValueError, TypeError):
        return None


@dataclass
class SimulatedLock:
    """An escrow held by the simulated ledger."""

    lock_ref: str
    lock_id: str
    tx_hash: str
    asset_id: str
    amount: Decimal
    hash_lock: str
    timeout_at: datetime
    account_id: str
    recipient_id: str
    block_height: int
    confirmations: int = 0
    claimed: bool = False
    refunded: bool = False
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    revealed_secret: Optional[str] = None  # public on-chain once claimed

    @property
    def settled(self) -> bool:
        return self.claimed or self.refunded


class DryRunLedgerAdapter(LedgerAdapter):
    """
    Simulated HTLC ledger.

    Features:
    - Per-account balances with credit() for funding
    - Hash locks are single-use per chain
    - Confirmations start at ``initial_confirmations`` and grow with mine()
    - fail_next() injects errors into the next lock/claim/refund/query call
    """

    def __init__(
        self,
        chain: str,
        clock: Optional[Callable[[], datetime]] = None,
        initial_confirmations: int = 6,
        latency: float = 0.0,
    ):
        self._chain = chain.lower()
        self._clock = clock or utcnow
        self.initial_confirmations = initial_confirmations
        self.latency = latency

        self._balances: dict[tuple[str, str], Decimal] = defaultdict(Decimal)
        self._locks: dict[str, SimulatedLock] = {}
        self._lock_ids: dict[str, str] = {}
        self._hash_locks: dict[str, str] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._height = 1000
        self.calls: dict[str, int] = defaultdict(int)

    @property
    def chain(self) -> str:
        return self._chain

    # ----------------------------------------------------------------------
    # Test / simulation helpers
    # ----------------------------------------------------------------------

    def credit(self, account_id: str, asset_id: str, amount: Decimal) -> None:
        """Fund an account."""
        self._balances[(account_id, asset_id.upper())] += Decimal(amount)

    def mine(self, blocks: int = 1) -> None:
        """Add confirmations to every lock."""
        self._height += blocks
        for lock in self._locks.values():
            lock.confirmations += blocks

    def set_confirmations(self, lock_ref: str, confirmations: int) -> None:
        self._get(lock_ref).confirmations = confirmations

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures[operation].extend([error] * times)

    def get_lock(self, lock_ref: str) -> SimulatedLock:
        return self._get(lock_ref)

    def find_by_lock_id(self, lock_id: str) -> Optional[SimulatedLock]:
        lock_ref = self._lock_ids.get(lock_id)
        return self._locks.get(lock_ref) if lock_ref else None

    @property
    def locks(self) -> list[SimulatedLock]:
        return list(self._locks.values())

    # ----------------------------------------------------------------------
    # LedgerAdapter
    # ----------------------------------------------------------------------

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
        await self._enter("lock")
        asset_id = asset_id.upper()

        existing = self.find_by_lock_id(lock_id)
        if existing is not None:
            logger.debug(f"[{self.chain}] lock {lock_id} already applied: {existing.lock_ref}")
            return self._receipt(existing)

        if hash_lock in self._hash_locks:
            raise HashLockInUseError(f"Hash lock already used on {self.chain}", self.chain)
        if amount <= 0:
            raise LockRejectedError(f"Invalid lock amount {amount}", self.chain)
        if timeout_at <= self._clock():
            raise LockRejectedError("Timelock is already in the past", self.chain)

        free = self._balances[(account_id, asset_id)] - self._locked(account_id, asset_id)
        if free < amount:
            raise LockRejectedError(
                f"Insufficient funds on {self.chain}: have {free} {asset_id}, need {amount}",
                self.chain,
            )

        lock_ref = f"htlc_{_digest(self.chain, lock_id)[:24]}"
        lock = SimulatedLock(
            lock_ref=lock_ref,
            lock_id=lock_id,
            tx_hash=f"0x{_digest('lock', self.chain, lock_ref)}",
            asset_id=asset_id,
            amount=Decimal(amount),
            hash_lock=hash_lock,
            timeout_at=timeout_at,
            account_id=account_id,
            recipient_id=recipient_id,
            block_height=self._height,
            confirmations=self.initial_confirmations,
        )
        self._locks[lock_ref] = lock
        self._lock_ids[lock_id] = lock_ref
        self._hash_locks[hash_lock] = lock_ref
        self._height += 1

        logger.info(
            f"[{self.chain}] locked {amount} {asset_id} from {account_id} for {recipient_id} "
            f"until {timeout_at.isoformat()} ({lock_ref})"
        )
        return self._receipt(lock)

    async def claim(self, lock_ref: str, secret: str) -> str:
        await self._enter("claim")
        lock = self._get(lock_ref)
        matches = _hash_secret(secret) == lock.hash_lock

        if lock.claimed:
            if matches:
                return lock.claim_ref
            raise InvalidSecretError("Secret does not match hash lock", self.chain)
        if lock.refunded:
            raise LockRefundedError(f"Lock {lock_ref} was refunded", self.chain)
        if not matches:
            raise InvalidSecretError("Secret does not match hash lock", self.chain)
        if self._clock() >= lock.timeout_at:
            raise LockExpiredError(f"Lock {lock_ref} timelock has passed", self.chain)

        self._balances[(lock.account_id, lock.asset_id)] -= lock.amount
        self._balances[(lock.recipient_id, lock.asset_id)] += lock.amount
        lock.claimed = True
        lock.revealed_secret = secret
        lock.claim_ref = f"0x{_digest('claim', self.chain, lock_ref)}"

        logger.info(f"[{self.chain}] claimed {lock_ref} for {lock.recipient_id}")
        return lock.claim_ref

    async def refund(self, lock_ref: str) -> str:
        await self._enter("refund")
        lock = self._get(lock_ref)

        if lock.refunded:
            return lock.refund_ref
        if lock.claimed:
            raise LockClaimedError(f"Lock {lock_ref} was already claimed", self.chain)
        if self._clock() < lock.timeout_at:
            raise TimelockActiveError(
                f"Lock {lock_ref} refundable after {lock.timeout_at.isoformat()}", self.chain
            )

        lock.refunded = True
        lock.refund_ref = f"0x{_digest('refund', self.chain, lock_ref)}"

        logger.info(f"[{self.chain}] refunded {lock_ref} to {lock.account_id}")
        return lock.refund_ref

    async def query_lock(self, lock_ref: str) -> LockStatus:
        await self._enter("query")
        lock = self._get(lock_ref)
        return LockStatus(
            lock_ref=lock.lock_ref,
            claimed=lock.claimed,
            refunded=lock.refunded,
            confirmations=lock.confirmations,
            expired=self._clock() >= lock.timeout_at,
            claim_ref=lock.claim_ref,
            refund_ref=lock.refund_ref,
            secret=lock.revealed_secret,
        )

    async def get_balance(self, account_id: str, asset_id: str) -> Decimal:
        await self._enter("balance")
        return self._balances[(account_id, asset_id.upper())]

    async def get_locked_balance(self, account_id: str, asset_id: str) -> Decimal:
        await self._enter("balance")
        return self._locked(account_id, asset_id.upper())

    # ----------------------------------------------------------------------
    # Internals
    # ----------------------------------------------------------------------

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        # Always yield so concurrent callers interleave like real RPCs
        await asyncio.sleep(self.latency)
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _get(self, lock_ref: str) -> SimulatedLock:
        lock = self._locks.get(lock_ref)
        if lock is None:
            raise UnknownLockError(f"Unknown lock {lock_ref}", self.chain)
        return lock

    def _locked(self, account_id: str, asset_id: str) -> Decimal:
        return sum(
            (
                lock.amount
                for lock in self._locks.values()
                if lock.account_id == account_id and lock.asset_id == asset_id and not lock.settled
            ),
            Decimal("0"),
        )

    def _receipt(self, lock: SimulatedLock) -> LockReceipt:
        return LockReceipt(
            lock_ref=lock.lock_ref,
            tx_hash=lock.tx_hash,
            chain=self.chain,
            block_height=lock.block_height,
        )
