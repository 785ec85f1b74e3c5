"""Append-only confirmation records for swap legs.

Every leg outcome (claimed, failed lock, refunded) is written as an immutable
record. Corrections never edit a record: they append a compensating record
that points at the one it corrects. The latest record of a leg is its
effective status.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional
from uuid import uuid4

from atomicswap.ledger.repository import ConfirmationRepository
from atomicswap.swap.errors import ValidationError
from atomicswap.swap.models import ConfirmationRecord, ConfirmationStatus
from atomicswap.utils import utcnow

logger = logging.getLogger(__name__)


class DualConfirmationStatus(str, Enum):
    """Confirmation state of a swap across both legs."""

    PENDING = "pending"
    PARTIAL_CONFIRMED = "partial_confirmed"
    DUAL_CONFIRMED = "dual_confirmed"
    FAILED = "failed"


class ConfirmationRecorder:
    """Writes and reads confirmation records. There is no mutation API."""

    def __init__(
        self,
        repository: ConfirmationRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repo = repository
        self._clock = clock or utcnow

    async def append(
        self,
        swap_id: str,
        leg_index: int,
        status: ConfirmationStatus,
        chain: str,
        asset_id: str,
        amount: Decimal,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        compensates: Optional[str] = None,
    ) -> ConfirmationRecord:
        """Append a record.

        A leg outcome already recorded with the same status and transaction
        hash is returned instead of being written twice, so replays after a
        crash do not duplicate history.
        """
        if tx_hash and compensates is None:
            for existing in await self._repo.list_for_swap(swap_id):
                if (
                    existing.leg_index == leg_index
                    and existing.status == status
                    and existing.tx_hash == tx_hash
                ):
                    return existing

        record = await self._repo.insert(
            record_id=f"conf_{uuid4().hex[:20]}",
            swap_id=swap_id,
            leg_index=leg_index,
            status=status,
            chain=chain,
            asset_id=asset_id,
            amount=amount,
            created_at=self._clock(),
            tx_hash=tx_hash,
            compensates=compensates,
            reason=reason,
        )
        logger.info(
            f"Confirmation record {record.record_id} #{record.sequence}: swap {swap_id} "
            f"leg {leg_index} {status.value} on {chain}"
        )
        return record

    async def get(self, swap_id: str) -> list[ConfirmationRecord]:
        """Ordered history of a swap."""
        return await self._repo.list_for_swap(swap_id)

    async def compensate(
        self,
        record_id: str,
        status: ConfirmationStatus,
        reason: str,
        tx_hash: Optional[str] = None,
    ) -> ConfirmationRecord:
        """Append a record correcting ``record_id``."""
        original = await self._repo.get(record_id)
        if original is None:
            raise ValidationError(f"Confirmation record {record_id} not found")

        return await self.append(
            swap_id=original.swap_id,
            leg_index=original.leg_index,
            status=status,
            chain=original.chain,
            asset_id=original.asset_id,
            amount=original.amount,
            tx_hash=tx_hash or original.tx_hash,
            reason=reason,
            compensates=original.record_id,
        )

    @staticmethod
    def effective_statuses(records: list[ConfirmationRecord]) -> dict[int, ConfirmationStatus]:
        """Latest status per leg."""
        latest: dict[int, ConfirmationStatus] = {}
        for record in sorted(records, key=lambda r: r.sequence):
            latest[record.leg_index] = record.status
        return latest

    async def dual_status(self, swap_id: str) -> DualConfirmationStatus:
        statuses = self.effective_statuses(await self.get(swap_id))

        if any(s != ConfirmationStatus.CONFIRMED for s in statuses.values()):
            return DualConfirmationStatus.FAILED

        confirmed = len(statuses)
        if confirmed >= 2:
            return DualConfirmationStatus.DUAL_CONFIRMED
        if confirmed == 1:
            return DualConfirmationStatus.PARTIAL_CONFIRMED
        return DualConfirmationStatus.PENDING

    async def regulatory_report(self, start: datetime, end: datetime) -> dict:
        """Summary of records written in [start, end) for audit."""
        records = await self._repo.list_between(start, end)

        by_status: dict[str, int] = defaultdict(int)
        volume: dict[str, Decimal] = defaultdict(Decimal)
        swaps: dict[str, list[dict]] = defaultdict(list)
        swap_records: dict[str, list[ConfirmationRecord]] = defaultdict(list)

        for record in records:
            by_status[record.status.value] += 1
            if record.status == ConfirmationStatus.CONFIRMED and record.compensates is None:
                volume[f"{record.chain}:{record.asset_id}"] += record.amount
            swaps[record.swap_id].append(record.to_dict())
            swap_records[record.swap_id].append(record)

        dual_confirmed = sum(
            1
            for items in swap_records.values()
            if list(self.effective_statuses(items).values()).count(ConfirmationStatus.CONFIRMED) >= 2
        )

        return {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generated_at": self._clock().isoformat(),
            "total_records": len(records),
            "total_swaps": len(swaps),
            "dual_confirmed_swaps": dual_confirmed,
            "by_status": dict(by_status),
            "volume_by_asset": {asset: str(amount) for asset, amount in volume.items()},
            "swaps": dict(swaps),
        }
