"""Balance reservation ledger.

A reservation is a time-bounded soft hold on an account's balance taken
before the on-ledger HTLC lock. It stops the same funds from being committed
to two swaps while the lock is in flight.

Available balance on (ledger, account, asset) is:

    settled balance - on-ledger locked - sum(active RESERVED holds)

Once a reservation is locked the on-ledger lock carries the hold, so LOCKED
reservations are not counted twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
from uuid import uuid4

from atomicswap.chains.base import LedgerAdapterError, LockReceipt, TimelockActiveError
from atomicswap.chains.factory import AdapterRegistry
from atomicswap.config import Settings, get_settings
from atomicswap.ledger.repository import ReservationRepository
from atomicswap.swap.errors import (
    InvalidTransitionError,
    LockFailedError,
    LockOutcomeUnknownError,
    ReservationNotFoundError,
    ValidationError,
)
from atomicswap.swap.models import (
    AvailabilityResult,
    Reservation,
    ReservationResult,
    ReservationState,
)
from atomicswap.utils import KeyedLock, retry_async, utcnow
from atomicswap.utils.retry import Sleep

logger = logging.getLogger(__name__)

RELEASED_STATES = frozenset(
    {ReservationState.RELEASED, ReservationState.UNLOCKED, ReservationState.EXPIRED}
)


def _is_retryable(error: Exception) -> bool:
    return isinstance(error, LedgerAdapterError) and error.retryable


@dataclass
class SweepReport:
    """Outcome of one expire_stale() pass."""

    expired: int = 0
    consumed: int = 0
    unlocked: int = 0
    pending: int = 0
    purged: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "consumed": self.consumed,
            "unlocked": self.unlocked,
            "pending": self.pending,
            "purged": self.purged,
            "errors": self.errors,
        }


class BalanceReservationLedger:
    """Reserve, lock, release and consume balance holds across ledgers."""

    def __init__(
        self,
        repository: ReservationRepository,
        adapters: AdapterRegistry,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Sleep] = None,
    ):
        self._repo = repository
        self._adapters = adapters
        self._settings = settings or get_settings()
        self._clock = clock or utcnow
        self._sleep = sleep
        timeout = self._settings.swap_lock_timeout_seconds
        # reserve() calls per (ledger, account, asset)
        self._balance_locks = KeyedLock("balance", timeout=timeout)
        # lock/release/consume per reservation id
        self._reservation_locks = KeyedLock("reservation", timeout=timeout)

    # ----------------------------------------------------------------------
    # Availability
    # ----------------------------------------------------------------------

    async def _available_balance(self, ledger_id: str, account_id: str, asset_id: str) -> Decimal:
        adapter = self._adapters.get(ledger_id)
        balance = await adapter.get_balance(account_id, asset_id)
        locked = await adapter.get_locked_balance(account_id, asset_id)
        reserved = await self._repo.sum_active(ledger_id, account_id, asset_id, self._clock())
        return balance - locked - reserved

    async def validate_availability(
        self, ledger_id: str, account_id: str, asset_id: str, amount: Decimal
    ) -> AvailabilityResult:
        """Check whether ``amount`` could be reserved right now."""
        available = await self._available_balance(ledger_id.lower(), account_id, asset_id)
        if amount <= 0:
            return AvailabilityResult(False, available, "invalid_amount")
        if available < amount:
            return AvailabilityResult(False, available, "insufficient_balance")
        return AvailabilityResult(True, available)

    # ----------------------------------------------------------------------
    # Reserve
    # ----------------------------------------------------------------------

    async def reserve(
        self,
        ledger_id: str,
        account_id: str,
        asset_id: str,
        amount: Decimal,
        *,
        reservation_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        owner_ref: Optional[str] = None,
    ) -> ReservationResult:
        """Place a hold on ``amount``.

        Calls on the same (ledger, account, asset) are serialized, so two
        concurrent reservations can never both pass the availability check
        against the same funds. Re-using a reservation id returns the existing
        reservation.

        Returns:
            ReservationResult; ``reason`` is ``insufficient_balance`` when the
            available balance is short.
        """
        ledger_id = ledger_id.lower()
        if amount <= 0:
            return ReservationResult(False, reason="invalid_amount")

        key = (ledger_id, account_id, asset_id)
        async with self._balance_locks.hold(key, operation="reserve"):
            if reservation_id:
                existing = await self._repo.get(reservation_id)
                if existing is not None:
                    return self._existing_result(existing)

            available = await self._available_balance(ledger_id, account_id, asset_id)
            if available < amount:
                logger.info(
                    f"Reservation refused on {ledger_id}: {account_id} has {available} "
                    f"{asset_id} available, needs {amount}"
                )
                return ReservationResult(
                    False, reason="insufficient_balance", available_balance=available
                )

            now = self._clock()
            ttl = ttl_seconds if ttl_seconds is not None else self._settings.reservation_ttl_seconds
            reservation = Reservation(
                reservation_id=reservation_id or f"res_{uuid4().hex}",
                ledger_id=ledger_id,
                account_id=account_id,
                asset_id=asset_id,
                amount=Decimal(amount),
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
                owner_ref=owner_ref,
            )
            await self._repo.add(reservation)

        logger.info(
            f"Reserved {amount} {asset_id} on {ledger_id} for {account_id} "
            f"({reservation.reservation_id}, ttl {ttl}s)"
        )
        return ReservationResult(
            True,
            reservation_id=reservation.reservation_id,
            available_balance=available - amount,
        )

    @staticmethod
    def _existing_result(existing: Reservation) -> ReservationResult:
        if existing.state in RELEASED_STATES:
            return ReservationResult(
                False,
                reservation_id=existing.reservation_id,
                reason=f"reservation_{existing.state.value}",
            )
        return ReservationResult(True, reservation_id=existing.reservation_id)

    async def get(self, reservation_id: str) -> Reservation:
        reservation = await self._repo.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    # ----------------------------------------------------------------------
    # Lock
    # ----------------------------------------------------------------------

    async def lock_reserved(
        self,
        reservation_id: str,
        hash_lock: str,
        timeout_at: datetime,
        recipient_id: str,
    ) -> LockReceipt:
        """Convert a reservation into an on-ledger HTLC lock.

        The reservation id is the adapter's idempotency key. The hash lock and
        recipient are recorded before the adapter is called, so a lock that
        was sent but never acknowledged can still be re-issued after its
        reservation TTL passed.

        Raises:
            ReservationNotFoundError: Unknown reservation
            LockFailedError: Reservation expired/released, different hash lock,
                or the ledger rejected the lock
            LockOutcomeUnknownError: Transient failures exhausted the retries
        """
        async with self._reservation_locks.hold(reservation_id, operation="lock"):
            reservation = await self.get(reservation_id)

            if reservation.state == ReservationState.LOCKED:
                if reservation.hash_lock == hash_lock:
                    return LockReceipt(
                        lock_ref=reservation.lock_ref,
                        tx_hash=reservation.lock_tx_hash,
                        chain=reservation.ledger_id,
                    )
                raise LockFailedError(
                    f"Reservation {reservation_id} is locked under a different hash lock"
                )

            if reservation.state != ReservationState.RESERVED:
                raise LockFailedError(
                    f"Reservation {reservation_id} is {reservation.state.value}"
                )

            attempted = reservation.hash_lock is not None
            if attempted and reservation.hash_lock != hash_lock:
                raise LockFailedError(
                    f"Reservation {reservation_id} was already sent under a different hash lock"
                )

            now = self._clock()
            if reservation.is_expired(now) and not attempted:
                reservation.state = ReservationState.EXPIRED
                reservation.released_at = now
                await self._repo.save(reservation)
                raise LockFailedError(f"Reservation {reservation_id} expired")

            if not attempted:
                reservation.hash_lock = hash_lock
                reservation.recipient_id = recipient_id
                await self._repo.save(reservation)

            adapter = self._adapters.get(reservation.ledger_id)
            try:
                receipt = await retry_async(
                    lambda: adapter.lock(
                        reservation.asset_id,
                        reservation.amount,
                        hash_lock,
                        timeout_at,
                        account_id=reservation.account_id,
                        recipient_id=recipient_id,
                        lock_id=reservation_id,
                    ),
                    attempts=self._settings.retry_max_attempts,
                    base_delay=self._settings.retry_base_delay_seconds,
                    max_delay=self._settings.retry_max_delay_seconds,
                    should_retry=_is_retryable,
                    description=f"lock {reservation_id} on {reservation.ledger_id}",
                    sleep=self._sleep,
                )
            except LedgerAdapterError as e:
                if e.retryable:
                    raise LockOutcomeUnknownError(
                        f"Lock of {reservation_id} on {reservation.ledger_id} unconfirmed: {e}"
                    ) from e
                # Definitive rejection: nothing was locked, drop the attempt marker
                reservation.hash_lock = None
                reservation.recipient_id = None
                await self._repo.save(reservation)
                raise LockFailedError(
                    f"Lock of {reservation_id} rejected by {reservation.ledger_id}: {e}"
                ) from e

            reservation.state = ReservationState.LOCKED
            reservation.lock_ref = receipt.lock_ref
            reservation.lock_tx_hash = receipt.tx_hash
            reservation.expires_at = timeout_at
            await self._repo.save(reservation)

        logger.info(
            f"Reservation {reservation_id} locked on {receipt.chain}: {receipt.lock_ref} "
            f"(tx {receipt.tx_hash})"
        )
        return receipt

    # ----------------------------------------------------------------------
    # Release / consume
    # ----------------------------------------------------------------------

    async def release(self, reservation_id: str, unlock: bool = False) -> Reservation:
        """Drop a reservation from the active set.

        With ``unlock`` a locked reservation is refunded on-ledger, which the
        ledger only accepts once the lock's timelock has passed. Releasing an
        already released reservation returns it unchanged while it is kept
        for the grace period.

        Raises:
            ReservationNotFoundError: Unknown (or purged) reservation
            ValidationError: Locked reservation released without ``unlock``
            TimelockActiveError: Refund attempted before the timelock
            LedgerAdapterError: Refund failed on the ledger
        """
        async with self._reservation_locks.hold(reservation_id, operation="release"):
            reservation = await self.get(reservation_id)
            now = self._clock()

            if reservation.state in RELEASED_STATES or reservation.state == ReservationState.CONSUMED:
                return reservation

            if reservation.state == ReservationState.RESERVED:
                reservation.state = ReservationState.RELEASED
                reservation.released_at = now
                await self._repo.save(reservation)
                logger.info(f"Reservation {reservation_id} released")
                return reservation

            # LOCKED
            if not unlock:
                raise ValidationError(
                    f"Reservation {reservation_id} is locked on-ledger; release with unlock=True"
                )
            return await self._refund_locked(reservation, now)

    async def _refund_locked(self, reservation: Reservation, now: datetime) -> Reservation:
        adapter = self._adapters.get(reservation.ledger_id)
        status = await adapter.query_lock(reservation.lock_ref)

        if status.claimed:
            reservation.state = ReservationState.CONSUMED
            reservation.claim_ref = status.claim_ref
            await self._repo.save(reservation)
            logger.warning(
                f"Reservation {reservation.reservation_id} was claimed on-ledger, not refunded"
            )
            return reservation

        refund_ref = status.refund_ref if status.refunded else await adapter.refund(reservation.lock_ref)

        reservation.state = ReservationState.UNLOCKED
        reservation.refund_ref = refund_ref
        reservation.released_at = now
        await self._repo.save(reservation)
        logger.info(
            f"Reservation {reservation.reservation_id} unlocked on {reservation.ledger_id} "
            f"(refund {refund_ref})"
        )
        return reservation

    async def consume(self, reservation_id: str, claim_ref: str) -> Reservation:
        """Mark a locked reservation CONSUMED after its on-ledger claim."""
        async with self._reservation_locks.hold(reservation_id, operation="consume"):
            reservation = await self.get(reservation_id)
            if reservation.state == ReservationState.CONSUMED:
                return reservation
            if reservation.state != ReservationState.LOCKED:
                raise InvalidTransitionError(
                    f"Reservation {reservation_id} is {reservation.state.value}, cannot consume"
                )
            reservation.state = ReservationState.CONSUMED
            reservation.claim_ref = claim_ref
            await self._repo.save(reservation)
        logger.info(f"Reservation {reservation_id} consumed by claim {claim_ref}")
        return reservation

    # ----------------------------------------------------------------------
    # Sweep
    # ----------------------------------------------------------------------

    async def expire_stale(self) -> SweepReport:
        """Expire overdue reservations and purge old released rows.

        RESERVED past expiry becomes EXPIRED. LOCKED past expiry (its timelock)
        is checked on-ledger: claimed becomes CONSUMED, otherwise it is
        refunded and becomes UNLOCKED, unless another reservation of the same
        owner was claimed. One failing reservation never stops the sweep.
        """
        report = SweepReport()
        now = self._clock()

        for stale in await self._repo.list_expired(now):
            try:
                outcome = await self._expire_one(stale.reservation_id, now)
            except TimelockActiveError:
                report.pending += 1
                continue
            except Exception as e:
                logger.error(f"Failed to expire reservation {stale.reservation_id}: {e}")
                report.errors += 1
                continue

            if outcome == ReservationState.EXPIRED:
                report.expired += 1
            elif outcome == ReservationState.CONSUMED:
                report.consumed += 1
            elif outcome == ReservationState.UNLOCKED:
                report.unlocked += 1
            else:
                report.pending += 1

        cutoff = now - timedelta(seconds=self._settings.reservation_grace_seconds)
        report.purged = await self._repo.purge_released(cutoff)

        if report.expired or report.consumed or report.unlocked or report.purged:
            logger.info(f"Reservation sweep: {report.to_dict()}")
        return report

    async def _expire_one(self, reservation_id: str, now: datetime) -> Optional[ReservationState]:
        async with self._reservation_locks.hold(reservation_id, operation="expire"):
            reservation = await self._repo.get(reservation_id)
            if reservation is None or not reservation.is_expired(now):
                return None

            if reservation.state == ReservationState.RESERVED:
                if reservation.hash_lock is not None and reservation.owner_ref:
                    # Lock sent but unacknowledged; the owning swap recovers it
                    return None
                reservation.state = ReservationState.EXPIRED
                reservation.released_at = now
                await self._repo.save(reservation)
                logger.info(f"Reservation {reservation_id} expired")
                return reservation.state

            if reservation.state == ReservationState.LOCKED:
                if await self._counterpart_claimed(reservation):
                    # Secret is public: refunding would leave one party short
                    logger.warning(
                        f"Reservation {reservation_id} not refunded: its swap has a claimed leg"
                    )
                    return None
                reservation = await self._refund_locked(reservation, now)
                return reservation.state

            return None

    async def _counterpart_claimed(self, reservation: Reservation) -> bool:
        """Whether another reservation of the same owner was claimed on-ledger."""
        if not reservation.owner_ref:
            return False
        for sibling in await self._repo.list_for_owner(reservation.owner_ref):
            if sibling.reservation_id == reservation.reservation_id:
                continue
            if sibling.state == ReservationState.CONSUMED:
                return True
            if sibling.state == ReservationState.LOCKED and sibling.lock_ref:
                adapter = self._adapters.get(sibling.ledger_id)
                status = await adapter.query_lock(sibling.lock_ref)
                if status.claimed:
                    return True
        return False
