"""Tests for append-only confirmation records."""

import dataclasses
from datetime import timedelta
from decimal import Decimal

import pytest

from atomicswap.services.confirmations import DualConfirmationStatus
from atomicswap.swap.errors import ValidationError
from atomicswap.swap.models import ConfirmationStatus


@pytest.fixture
def recorder(runtime):
    return runtime.recorder


async def confirm_leg(recorder, swap_id, leg_index, tx_hash):
    chain, asset, amount = (
        ("ethereum", "USDC", Decimal("100")) if leg_index == 0 else ("hedera", "HBAR", Decimal("50"))
    )
    return await recorder.append(
        swap_id, leg_index, ConfirmationStatus.CONFIRMED, chain, asset, amount, tx_hash=tx_hash
    )


class TestAppend:
    """Tests for writing records."""

    @pytest.mark.asyncio
    async def test_records_are_ordered_and_immutable(self, recorder):
        first = await confirm_leg(recorder, "swap_a", 1, "0xclaim1")
        second = await confirm_leg(recorder, "swap_a", 0, "0xclaim0")

        assert second.sequence > first.sequence
        history = await recorder.get("swap_a")
        assert [r.record_id for r in history] == [first.record_id, second.record_id]

        with pytest.raises(dataclasses.FrozenInstanceError):
            first.status = ConfirmationStatus.FAILED

    @pytest.mark.asyncio
    async def test_replayed_outcome_not_duplicated(self, recorder):
        first = await confirm_leg(recorder, "swap_b", 0, "0xclaim")
        replay = await confirm_leg(recorder, "swap_b", 0, "0xclaim")

        assert replay.record_id == first.record_id
        assert len(await recorder.get("swap_b")) == 1

    @pytest.mark.asyncio
    async def test_records_without_tx_hash_always_append(self, recorder):
        for _ in range(2):
            await recorder.append(
                "swap_c", 1, ConfirmationStatus.FAILED, "hedera", "HBAR", Decimal("50"),
                reason="lock rejected",
            )

        assert len(await recorder.get("swap_c")) == 2


class TestDualStatus:
    """Tests for dual-confirmation status."""

    @pytest.mark.asyncio
    async def test_progression(self, recorder):
        assert await recorder.dual_status("swap_d") == DualConfirmationStatus.PENDING

        await confirm_leg(recorder, "swap_d", 1, "0xclaim1")
        assert await recorder.dual_status("swap_d") == DualConfirmationStatus.PARTIAL_CONFIRMED

        await confirm_leg(recorder, "swap_d", 0, "0xclaim0")
        assert await recorder.dual_status("swap_d") == DualConfirmationStatus.DUAL_CONFIRMED

    @pytest.mark.asyncio
    async def test_failed_leg_fails_the_swap(self, recorder):
        await recorder.append(
            "swap_e", 0, ConfirmationStatus.ROLLED_BACK, "ethereum", "USDC", Decimal("100"),
            tx_hash="0xrefund",
        )

        assert await recorder.dual_status("swap_e") == DualConfirmationStatus.FAILED


class TestCompensate:
    """Tests for compensating records."""

    @pytest.mark.asyncio
    async def test_compensation_supersedes_without_editing(self, recorder):
        original = await confirm_leg(recorder, "swap_f", 0, "0xclaim0")
        await confirm_leg(recorder, "swap_f", 1, "0xclaim1")

        correction = await recorder.compensate(
            original.record_id, ConfirmationStatus.FAILED, "claim reorged out"
        )

        history = await recorder.get("swap_f")
        assert len(history) == 3
        assert history[0].status == ConfirmationStatus.CONFIRMED
        assert correction.compensates == original.record_id
        assert correction.tx_hash == "0xclaim0"
        assert correction.amount == Decimal("100")
        assert recorder.effective_statuses(history) == {
            0: ConfirmationStatus.FAILED,
            1: ConfirmationStatus.CONFIRMED,
        }
        assert await recorder.dual_status("swap_f") == DualConfirmationStatus.FAILED

    @pytest.mark.asyncio
    async def test_compensate_unknown_record(self, recorder):
        with pytest.raises(ValidationError):
            await recorder.compensate("conf_missing", ConfirmationStatus.FAILED, "typo")


class TestRegulatoryReport:
    """Tests for the audit report."""

    @pytest.mark.asyncio
    async def test_report_window(self, recorder, clock):
        start = clock()
        await confirm_leg(recorder, "swap_g", 0, "0xg0")
        await confirm_leg(recorder, "swap_g", 1, "0xg1")
        await recorder.append(
            "swap_h", 0, ConfirmationStatus.FAILED, "ethereum", "USDC", Decimal("100"),
            reason="lock rejected",
        )
        clock.advance(hours=2)
        await confirm_leg(recorder, "swap_i", 0, "0xi0")

        report = await recorder.regulatory_report(start, start + timedelta(hours=1))

        assert report["total_records"] == 3
        assert report["total_swaps"] == 2
        assert report["dual_confirmed_swaps"] == 1
        assert report["by_status"] == {"confirmed": 2, "failed": 1}
        assert Decimal(report["volume_by_asset"]["ethereum:USDC"]) == Decimal("100")
        assert Decimal(report["volume_by_asset"]["hedera:HBAR"]) == Decimal("50")
        assert set(report["swaps"]) == {"swap_g", "swap_h"}
