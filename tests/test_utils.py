"""Tests for keyed locks and retry with backoff."""

import asyncio

import pytest

from atomicswap.chains.base import LockRejectedError, TransientLedgerError
from atomicswap.utils import KeyedLock, LockTimeoutError, backoff_delay, retry_async


class TestKeyedLock:
    """Tests for per-key exclusive sections."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized_in_arrival_order(self):
        locks = KeyedLock("test")
        order = []

        async def worker(name: str):
            async with locks.hold("swap_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock("test", timeout=0.5)

        async with locks.hold("swap_1"):
            async with locks.hold("swap_2"):
                assert locks.is_locked("swap_1")
                assert locks.is_locked("swap_2")

        assert not locks.is_locked("swap_1")

    @pytest.mark.asyncio
    async def test_timeout(self):
        locks = KeyedLock("test", timeout=0.05)

        async with locks.hold("swap_1"):
            with pytest.raises(LockTimeoutError):
                async with locks.hold("swap_1"):
                    pass
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_idle_keys_are_dropped(self):
        """Finished swaps leave nothing behind in the registry."""
        locks = KeyedLock("test", timeout=0.5)

        for i in range(100):
            async with locks.hold(f"swap_{i}"):
                assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_keeps_key_until_last_release(self):
        locks = KeyedLock("test", timeout=0.5)

        async def waiter():
            async with locks.hold("swap_1"):
                assert locks.is_locked("swap_1")

        async with locks.hold("swap_1"):
            task = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            assert len(locks) == 1

        await task
        assert len(locks) == 0
        assert not locks.is_locked("swap_1")

    @pytest.mark.asyncio
    async def test_error_in_block_drops_key(self):
        locks = KeyedLock("test")

        with pytest.raises(RuntimeError):
            async with locks.hold("swap_1"):
                raise RuntimeError("boom")

        assert len(locks) == 0


class TestRetry:
    """Tests for retry_async."""

    def test_backoff_is_exponential_and_capped(self):
        assert backoff_delay(1, 0.5, 10) == 0.5
        assert backoff_delay(2, 0.5, 10) == 1.0
        assert backoff_delay(3, 0.5, 10) == 2.0
        assert backoff_delay(10, 0.5, 10) == 10

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        calls = []
        delays = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise TransientLedgerError("node timeout", "ethereum")
            return "ok"

        async def sleep(delay):
            delays.append(delay)

        result = await retry_async(
            operation,
            attempts=5,
            base_delay=1,
            max_delay=30,
            should_retry=lambda e: getattr(e, "retryable", False),
            sleep=sleep,
        )

        assert result == "ok"
        assert len(calls) == 3
        assert delays == [1, 2]

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        calls = []

        async def operation():
            calls.append(1)
            raise LockRejectedError("rejected", "ethereum")

        with pytest.raises(LockRejectedError):
            await retry_async(
                operation,
                attempts=5,
                base_delay=0,
                max_delay=0,
                should_retry=lambda e: getattr(e, "retryable", False),
            )

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_single_attempt_is_not_retried(self):
        calls = []
        delays = []

        async def operation():
            calls.append(1)
            raise TransientLedgerError("node timeout", "ethereum")

        async def sleep(delay):
            delays.append(delay)

        with pytest.raises(TransientLedgerError):
            await retry_async(
                operation,
                attempts=1,
                base_delay=1,
                max_delay=30,
                should_retry=lambda e: True,
                sleep=sleep,
            )

        assert len(calls) == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        async def operation():
            raise TransientLedgerError("still down", "hedera")

        with pytest.raises(TransientLedgerError, match="still down"):
            await retry_async(
                operation,
                attempts=3,
                base_delay=0,
                max_delay=0,
                should_retry=lambda e: True,
            )
