"""Tests for the balance reservation ledger."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from atomicswap.chains.base import LockRejectedError, TimelockActiveError, TransientLedgerError
from atomicswap.swap.errors import (
    InsufficientBalanceError,
    LockFailedError,
    LockOutcomeUnknownError,
    ReservationNotFoundError,
    ValidationError,
)
from atomicswap.swap.models import ReservationState
from atomicswap.swap.secrets import SecretManager

SECRET = "ab" * 32
HASH_LOCK = SecretManager.hash(SECRET)


@pytest.fixture
def ledger(runtime):
    return runtime.reservations


class TestReserve:
    """Tests for reserve() and availability."""

    @pytest.mark.asyncio
    async def test_reserve_reduces_available_balance(self, ledger):
        before = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("100"))
        assert before.available
        assert before.available_balance == Decimal("1000")

        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("250"))

        assert result.success
        assert result.available_balance == Decimal("750")
        after = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("800"))
        assert not after.available
        assert after.reason == "insufficient_balance"
        assert after.available_balance == Decimal("750")

    @pytest.mark.asyncio
    async def test_invalid_amount(self, ledger):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("0"))

        assert not result.success
        assert result.reason == "invalid_amount"
        with pytest.raises(ValidationError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overdraw(self, ledger, ethereum):
        """Three concurrent holds of 40 against 100: exactly one is refused."""
        ethereum.credit("carol", "USDC", Decimal("100"))

        results = await asyncio.gather(
            *(ledger.reserve("ethereum", "carol", "USDC", Decimal("40")) for _ in range(3))
        )

        assert [r.success for r in results] == [True, True, False]
        refused = results[2]
        assert refused.reason == "insufficient_balance"
        assert refused.available_balance == Decimal("20")
        with pytest.raises(InsufficientBalanceError):
            refused.raise_for_status()

        availability = await ledger.validate_availability("ethereum", "carol", "USDC", Decimal("1"))
        assert availability.available_balance == Decimal("20")

    @pytest.mark.asyncio
    async def test_reuse_of_reservation_id_returns_existing(self, ledger):
        first = await ledger.reserve(
            "ethereum", "alice", "USDC", Decimal("100"), reservation_id="swap_x:leg0"
        )
        second = await ledger.reserve(
            "ethereum", "alice", "USDC", Decimal("100"), reservation_id="swap_x:leg0"
        )

        assert first.success and second.success
        assert second.reservation_id == "swap_x:leg0"
        availability = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("1"))
        assert availability.available_balance == Decimal("900")

    @pytest.mark.asyncio
    async def test_unknown_ledger(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.reserve("bitcoin", "alice", "BTC", Decimal("1"))


class TestRelease:
    """Tests for release()."""

    @pytest.mark.asyncio
    async def test_release_restores_availability(self, ledger):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("600"))

        released = await ledger.release(result.reservation_id)

        assert released.state == ReservationState.RELEASED
        availability = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("1000"))
        assert availability.available

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, ledger):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("10"))

        first = await ledger.release(result.reservation_id)
        second = await ledger.release(result.reservation_id)

        assert first.state == second.state == ReservationState.RELEASED
        assert first.released_at == second.released_at

    @pytest.mark.asyncio
    async def test_release_unknown(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            await ledger.release("res_missing")

    @pytest.mark.asyncio
    async def test_locked_reservation_requires_unlock(self, ledger, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("10"))
        await ledger.lock_reserved(
            result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=60), "bob"
        )

        with pytest.raises(ValidationError):
            await ledger.release(result.reservation_id)
        with pytest.raises(TimelockActiveError):
            await ledger.release(result.reservation_id, unlock=True)

        clock.advance(60)
        unlocked = await ledger.release(result.reservation_id, unlock=True)

        assert unlocked.state == ReservationState.UNLOCKED
        assert unlocked.refund_ref


class TestLockReserved:
    """Tests for lock_reserved()."""

    @pytest.mark.asyncio
    async def test_lock_is_idempotent(self, ledger, ethereum, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))
        timeout_at = clock() + timedelta(seconds=600)

        first = await ledger.lock_reserved(result.reservation_id, HASH_LOCK, timeout_at, "bob")
        second = await ledger.lock_reserved(result.reservation_id, HASH_LOCK, timeout_at, "bob")

        assert first.lock_ref == second.lock_ref
        assert len(ethereum.locks) == 1
        assert ethereum.calls["lock"] == 1

        reservation = await ledger.get(result.reservation_id)
        assert reservation.state == ReservationState.LOCKED
        # The on-ledger lock now carries the hold, it is not counted twice
        availability = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("1"))
        assert availability.available_balance == Decimal("900")

    @pytest.mark.asyncio
    async def test_different_hash_lock_rejected(self, ledger, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))
        timeout_at = clock() + timedelta(seconds=600)
        await ledger.lock_reserved(result.reservation_id, HASH_LOCK, timeout_at, "bob")

        with pytest.raises(LockFailedError):
            await ledger.lock_reserved(result.reservation_id, "cd" * 32, timeout_at, "bob")

    @pytest.mark.asyncio
    async def test_expired_reservation_cannot_lock(self, ledger, ethereum, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"), ttl_seconds=10)
        clock.advance(11)

        with pytest.raises(LockFailedError):
            await ledger.lock_reserved(
                result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
            )

        reservation = await ledger.get(result.reservation_id)
        assert reservation.state == ReservationState.EXPIRED
        assert ethereum.calls["lock"] == 0

    @pytest.mark.asyncio
    async def test_rejected_lock_keeps_reservation(self, ledger, ethereum, clock):
        ethereum.fail_next("lock", LockRejectedError("contract paused", "ethereum"))
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))

        with pytest.raises(LockFailedError):
            await ledger.lock_reserved(
                result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
            )

        reservation = await ledger.get(result.reservation_id)
        assert reservation.state == ReservationState.RESERVED
        assert reservation.hash_lock is None

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_outcome_unknown(self, ledger, ethereum, clock):
        ethereum.fail_next("lock", TransientLedgerError("rpc timeout", "ethereum"), times=3)
        result = await ledger.reserve(
            "ethereum", "alice", "USDC", Decimal("100"), ttl_seconds=10, owner_ref="swap_y"
        )

        with pytest.raises(LockOutcomeUnknownError):
            await ledger.lock_reserved(
                result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
            )

        reservation = await ledger.get(result.reservation_id)
        assert reservation.hash_lock == HASH_LOCK
        assert ethereum.calls["lock"] == 3

        # The sweep leaves an unacknowledged lock to its swap
        clock.advance(11)
        report = await ledger.expire_stale()
        assert report.pending == 1
        assert report.expired == 0

        receipt = await ledger.lock_reserved(
            result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
        )
        assert receipt.lock_ref


class TestConsume:
    """Tests for consume()."""

    @pytest.mark.asyncio
    async def test_consume_after_claim(self, ledger, ethereum, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))
        receipt = await ledger.lock_reserved(
            result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
        )
        claim_ref = await ethereum.claim(receipt.lock_ref, SECRET)

        consumed = await ledger.consume(result.reservation_id, claim_ref)
        again = await ledger.consume(result.reservation_id, claim_ref)

        assert consumed.state == again.state == ReservationState.CONSUMED
        assert consumed.claim_ref == claim_ref


class TestExpireStale:
    """Tests for the reservation sweep."""

    @pytest.mark.asyncio
    async def test_expires_overdue_holds(self, ledger, clock):
        stale = await ledger.reserve("ethereum", "alice", "USDC", Decimal("300"), ttl_seconds=10)
        fresh = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"), ttl_seconds=600)
        clock.advance(11)

        report = await ledger.expire_stale()

        assert report.expired == 1
        assert (await ledger.get(stale.reservation_id)).state == ReservationState.EXPIRED
        assert (await ledger.get(fresh.reservation_id)).state == ReservationState.RESERVED
        availability = await ledger.validate_availability("ethereum", "alice", "USDC", Decimal("1"))
        assert availability.available_balance == Decimal("900")

    @pytest.mark.asyncio
    async def test_unlocks_locks_past_timelock(self, ledger, ethereum, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))
        receipt = await ledger.lock_reserved(
            result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=60), "bob"
        )
        clock.advance(60)

        report = await ledger.expire_stale()

        assert report.unlocked == 1
        assert ethereum.get_lock(receipt.lock_ref).refunded
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("0")

    @pytest.mark.asyncio
    async def test_claimed_lock_is_consumed(self, ledger, ethereum, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("100"))
        receipt = await ledger.lock_reserved(
            result.reservation_id, HASH_LOCK, clock() + timedelta(seconds=60), "bob"
        )
        await ethereum.claim(receipt.lock_ref, SECRET)
        clock.advance(60)

        report = await ledger.expire_stale()

        assert report.consumed == 1
        assert (await ledger.get(result.reservation_id)).state == ReservationState.CONSUMED

    @pytest.mark.asyncio
    async def test_lock_kept_when_sibling_leg_was_claimed(self, ledger, ethereum, hedera, clock):
        """The sweep never refunds one leg of a swap whose other leg was claimed."""
        initiator = await ledger.reserve(
            "ethereum", "alice", "USDC", Decimal("100"), owner_ref="swap_x"
        )
        responder = await ledger.reserve("hedera", "bob", "HBAR", Decimal("50"), owner_ref="swap_x")
        initiator_receipt = await ledger.lock_reserved(
            initiator.reservation_id, HASH_LOCK, clock() + timedelta(seconds=600), "bob"
        )
        responder_receipt = await ledger.lock_reserved(
            responder.reservation_id, HASH_LOCK, clock() + timedelta(seconds=300), "alice"
        )
        # Claimed straight on the ledger; nothing has consumed the reservation yet
        await hedera.claim(responder_receipt.lock_ref, SECRET)
        clock.advance(601)

        report = await ledger.expire_stale()

        assert report.consumed == 1
        assert report.unlocked == 0
        assert report.pending == 1
        assert (await ledger.get(responder.reservation_id)).state == ReservationState.CONSUMED
        assert (await ledger.get(initiator.reservation_id)).state == ReservationState.LOCKED
        assert not ethereum.get_lock(initiator_receipt.lock_ref).refunded
        assert ethereum.calls["refund"] == 0

        # Still held on the next pass
        report = await ledger.expire_stale()
        assert report.unlocked == 0
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("100")

    @pytest.mark.asyncio
    async def test_purges_after_grace_period(self, ledger, clock):
        result = await ledger.reserve("ethereum", "alice", "USDC", Decimal("10"))
        await ledger.release(result.reservation_id)

        clock.advance(3600)
        assert (await ledger.expire_stale()).purged == 0

        clock.advance(1)
        assert (await ledger.expire_stale()).purged == 1
        with pytest.raises(ReservationNotFoundError):
            await ledger.get(result.reservation_id)
