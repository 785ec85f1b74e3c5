"""Tests for the simulated HTLC ledger."""

from datetime import timedelta
from decimal import Decimal

import pytest

from atomicswap.chains.base import (
    HashLockInUseError,
    InvalidSecretError,
    LockClaimedError,
    LockExpiredError,
    LockRejectedError,
    TimelockActiveError,
    TransientLedgerError,
    UnknownLockError,
)
from atomicswap.swap.secrets import SecretManager

SECRET = "42" * 32
HASH_LOCK = SecretManager.hash(SECRET)


async def lock(adapter, clock, lock_id="lock-1", amount="100", hash_lock=HASH_LOCK, seconds=600):
    return await adapter.lock(
        "USDC",
        Decimal(amount),
        hash_lock,
        clock() + timedelta(seconds=seconds),
        account_id="alice",
        recipient_id="bob",
        lock_id=lock_id,
    )


class TestLock:
    """Tests for lock creation."""

    @pytest.mark.asyncio
    async def test_lock_moves_funds_into_escrow(self, ethereum, clock):
        receipt = await lock(ethereum, clock)

        assert receipt.chain == "ethereum"
        assert receipt.lock_ref.startswith("htlc_")
        assert await ethereum.get_balance("alice", "USDC") == Decimal("1000")
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("100")

    @pytest.mark.asyncio
    async def test_same_lock_id_is_a_noop(self, ethereum, clock):
        first = await lock(ethereum, clock)
        second = await lock(ethereum, clock)

        assert first == second
        assert len(ethereum.locks) == 1
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("100")

    @pytest.mark.asyncio
    async def test_hash_lock_is_single_use(self, ethereum, clock):
        await lock(ethereum, clock)

        with pytest.raises(HashLockInUseError):
            await lock(ethereum, clock, lock_id="lock-2")

    @pytest.mark.asyncio
    async def test_insufficient_funds_rejected(self, ethereum, clock):
        with pytest.raises(LockRejectedError):
            await lock(ethereum, clock, amount="1000.01")

    @pytest.mark.asyncio
    async def test_past_timelock_rejected(self, ethereum, clock):
        with pytest.raises(LockRejectedError):
            await lock(ethereum, clock, seconds=-1)


class TestClaimAndRefund:
    """Tests for claim and refund semantics."""

    @pytest.mark.asyncio
    async def test_claim_transfers_to_recipient(self, ethereum, clock):
        receipt = await lock(ethereum, clock)

        claim_ref = await ethereum.claim(receipt.lock_ref, SECRET)

        assert await ethereum.get_balance("alice", "USDC") == Decimal("900")
        assert await ethereum.get_balance("bob", "USDC") == Decimal("100")
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("0")
        assert ethereum.get_lock(receipt.lock_ref).revealed_secret == SECRET
        status = await ethereum.query_lock(receipt.lock_ref)
        assert status.claimed
        assert status.claim_ref == claim_ref
        assert status.secret == SECRET
        # Re-claim with the same secret returns the original reference
        assert await ethereum.claim(receipt.lock_ref, SECRET) == claim_ref
        assert await ethereum.get_balance("bob", "USDC") == Decimal("100")

    @pytest.mark.asyncio
    async def test_claim_with_wrong_secret(self, ethereum, clock):
        receipt = await lock(ethereum, clock)

        with pytest.raises(InvalidSecretError):
            await ethereum.claim(receipt.lock_ref, "43" * 32)

    @pytest.mark.asyncio
    async def test_claim_after_timelock(self, ethereum, clock):
        receipt = await lock(ethereum, clock, seconds=60)
        clock.advance(60)

        with pytest.raises(LockExpiredError):
            await ethereum.claim(receipt.lock_ref, SECRET)

    @pytest.mark.asyncio
    async def test_refund_only_after_timelock(self, ethereum, clock):
        receipt = await lock(ethereum, clock, seconds=60)

        with pytest.raises(TimelockActiveError):
            await ethereum.refund(receipt.lock_ref)

        clock.advance(61)
        refund_ref = await ethereum.refund(receipt.lock_ref)

        assert await ethereum.refund(receipt.lock_ref) == refund_ref
        assert await ethereum.get_balance("alice", "USDC") == Decimal("1000")
        assert await ethereum.get_locked_balance("alice", "USDC") == Decimal("0")

    @pytest.mark.asyncio
    async def test_refund_after_claim_fails(self, ethereum, clock):
        receipt = await lock(ethereum, clock, seconds=60)
        await ethereum.claim(receipt.lock_ref, SECRET)
        clock.advance(61)

        with pytest.raises(LockClaimedError):
            await ethereum.refund(receipt.lock_ref)


class TestQueryAndFailures:
    """Tests for query_lock, confirmations and injected failures."""

    @pytest.mark.asyncio
    async def test_query_reports_confirmations_and_expiry(self, clock):
        from atomicswap.chains.dry_run import DryRunLedgerAdapter

        adapter = DryRunLedgerAdapter("sui", clock=clock, initial_confirmations=0)
        adapter.credit("alice", "SUI", Decimal("10"))
        receipt = await adapter.lock(
            "SUI",
            Decimal("5"),
            HASH_LOCK,
            clock() + timedelta(seconds=30),
            account_id="alice",
            recipient_id="bob",
            lock_id="lock-sui",
        )

        status = await adapter.query_lock(receipt.lock_ref)
        assert status.confirmations == 0
        assert not status.expired
        assert status.secret is None

        adapter.mine(4)
        clock.advance(30)
        status = await adapter.query_lock(receipt.lock_ref)
        assert status.confirmations == 4
        assert status.expired
        assert not status.settled

    @pytest.mark.asyncio
    async def test_unknown_lock(self, ethereum):
        with pytest.raises(UnknownLockError):
            await ethereum.query_lock("htlc_missing")

    @pytest.mark.asyncio
    async def test_fail_next_injects_errors(self, ethereum, clock):
        ethereum.fail_next("lock", TransientLedgerError("rpc timeout", "ethereum"), times=2)

        for _ in range(2):
            with pytest.raises(TransientLedgerError):
                await lock(ethereum, clock)

        receipt = await lock(ethereum, clock)
        assert receipt.lock_ref
        assert ethereum.calls["lock"] == 3
