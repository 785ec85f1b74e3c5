"""Repositories for swap, reservation and confirmation persistence.

Each repository opens one short session per operation and maps rows to the
domain dataclasses in ``atomicswap.swap.models``. Callers never see ORM
objects.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, or_, select

from atomicswap.ledger.database import SessionFactory, get_session_factory, session_scope
from atomicswap.ledger.models import (
    AtomicSwapRecord,
    ConfirmationRecordRow,
    ReservationRecord,
    SwapEventRecord,
    SwapLegRecord,
)
from atomicswap.swap.events import SwapEvent, SwapEventType
from atomicswap.swap.models import (
    TERMINAL_STATUSES,
    AtomicSwap,
    AtomicSwapAsset,
    ConfirmationRecord,
    ConfirmationStatus,
    LegState,
    Reservation,
    ReservationState,
    RollbackInfo,
    SubStage,
    SwapFilter,
    SwapProgress,
    SwapStage,
    SwapStatus,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ==========================================================================
# Swaps
# ==========================================================================


def _dump_sub_stages(progress: SwapProgress) -> str:
    return json.dumps(
        {
            name: {
                "completed": sub.completed,
                "timestamp": _iso(sub.timestamp),
                "tx_hash": sub.tx_hash,
            }
            for name, sub in progress.sub_stages.items()
        }
    )


def _load_sub_stages(raw: str) -> dict[str, SubStage]:
    return {
        name: SubStage(
            completed=item.get("completed", False),
            timestamp=_parse(item.get("timestamp")),
            tx_hash=item.get("tx_hash"),
        )
        for name, item in json.loads(raw or "{}").items()
    }


def _dump_rollback(rollback: RollbackInfo) -> str:
    return json.dumps(
        {
            "reason": rollback.reason,
            "started_at": _iso(rollback.started_at),
            "completed_at": _iso(rollback.completed_at),
            "attempts": rollback.attempts,
            "escalated": rollback.escalated,
            "unlock": {str(k): v for k, v in rollback.unlock.items()},
        }
    )


def _load_rollback(raw: str) -> RollbackInfo:
    data = json.loads(raw or "{}")
    return RollbackInfo(
        reason=data.get("reason"),
        started_at=_parse(data.get("started_at")),
        completed_at=_parse(data.get("completed_at")),
        attempts=data.get("attempts", 0),
        escalated=data.get("escalated", False),
        unlock={int(k): v for k, v in data.get("unlock", {}).items()},
    )


def _leg_to_domain(row: SwapLegRecord) -> AtomicSwapAsset:
    return AtomicSwapAsset(
        index=row.leg_index,
        chain=row.chain,
        asset_id=row.asset_id,
        amount=Decimal(row.amount),
        account_id=row.account_id,
        recipient_id=row.recipient_id,
        timeout_seconds=row.timeout_seconds,
        timelock_at=row.timelock_at,
        required_confirmations=row.required_confirmations,
        state=LegState(row.state),
        reservation_id=row.reservation_id,
        lock_ref=row.lock_ref,
        lock_tx_hash=row.lock_tx_hash,
        claim_tx_hash=row.claim_tx_hash,
        refund_tx_hash=row.refund_tx_hash,
        confirmations=row.confirmations,
        locked_at=row.locked_at,
        claimed_at=row.claimed_at,
        refunded_at=row.refunded_at,
        error=row.error,
    )


def _apply_leg(row: SwapLegRecord, leg: AtomicSwapAsset) -> None:
    row.leg_index = leg.index
    row.chain = leg.chain
    row.asset_id = leg.asset_id
    row.amount = leg.amount
    row.account_id = leg.account_id
    row.recipient_id = leg.recipient_id
    row.timeout_seconds = leg.timeout_seconds
    row.timelock_at = leg.timelock_at
    row.required_confirmations = leg.required_confirmations
    row.confirmations = leg.confirmations
    row.state = leg.state.value
    row.reservation_id = leg.reservation_id
    row.lock_ref = leg.lock_ref
    row.lock_tx_hash = leg.lock_tx_hash
    row.claim_tx_hash = leg.claim_tx_hash
    row.refund_tx_hash = leg.refund_tx_hash
    row.locked_at = leg.locked_at
    row.claimed_at = leg.claimed_at
    row.refunded_at = leg.refunded_at
    row.error = leg.error


def _event_to_domain(row: SwapEventRecord) -> SwapEvent:
    return SwapEvent(
        swap_id=row.swap_id,
        event_type=SwapEventType(row.event_type),
        message=row.message,
        created_at=row.created_at,
        event_id=row.event_id,
        leg_index=row.leg_index,
        chain=row.chain,
        tx_hash=row.tx_hash,
        data=json.loads(row.data or "{}"),
    )


def _event_to_row(event: SwapEvent) -> SwapEventRecord:
    return SwapEventRecord(
        event_id=event.event_id,
        swap_id=event.swap_id,
        event_type=event.event_type.value,
        message=event.message,
        leg_index=event.leg_index,
        chain=event.chain,
        tx_hash=event.tx_hash,
        data=json.dumps(event.data, default=str),
        created_at=event.created_at,
    )


def _swap_to_domain(row: AtomicSwapRecord) -> AtomicSwap:
    return AtomicSwap(
        swap_id=row.swap_id,
        initiator_id=row.initiator_id,
        responder_id=row.responder_id,
        legs=[_leg_to_domain(leg) for leg in sorted(row.legs, key=lambda leg: leg.leg_index)],
        secret_hash=row.secret_hash,
        sealed_secret=row.sealed_secret,
        status=SwapStatus(row.status),
        progress=SwapProgress(
            stage=SwapStage(row.stage),
            percentage=row.progress_percentage,
            description=row.progress_description,
            last_updated=row.progress_updated_at,
            sub_stages=_load_sub_stages(row.progress_sub_stages),
        ),
        timeout_at=row.timeout_at,
        auto_rollback=row.auto_rollback,
        rollback=_load_rollback(row.rollback),
        failure_reason=row.failure_reason,
        events=[_event_to_domain(event) for event in row.events],
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        failed_at=row.failed_at,
    )


def _apply_swap(row: AtomicSwapRecord, swap: AtomicSwap) -> None:
    row.initiator_id = swap.initiator_id
    row.responder_id = swap.responder_id
    row.secret_hash = swap.secret_hash
    row.sealed_secret = swap.sealed_secret
    row.status = swap.status.value
    row.auto_rollback = swap.auto_rollback
    row.stage = swap.progress.stage.value
    row.progress_percentage = swap.progress.percentage
    row.progress_description = swap.progress.description
    row.progress_sub_stages = _dump_sub_stages(swap.progress)
    row.progress_updated_at = swap.progress.last_updated
    row.timeout_at = swap.timeout_at
    row.rollback = _dump_rollback(swap.rollback)
    row.failure_reason = swap.failure_reason
    row.created_at = swap.created_at
    row.updated_at = swap.updated_at
    row.completed_at = swap.completed_at
    row.failed_at = swap.failed_at


class SwapRepository:
    """Persistence for atomic swaps, their legs and event logs."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session_factory()

    async def create(self, swap: AtomicSwap) -> AtomicSwap:
        """Insert a new swap with its legs and initial events."""
        async with session_scope(self._session_factory) as session:
            row = AtomicSwapRecord(swap_id=swap.swap_id)
            _apply_swap(row, swap)
            for leg in swap.legs:
                leg_row = SwapLegRecord()
                _apply_leg(leg_row, leg)
                row.legs.append(leg_row)
            for event in swap.events:
                row.events.append(_event_to_row(event))
            session.add(row)
        return swap

    async def get(self, swap_id: str) -> Optional[AtomicSwap]:
        """Load a swap by id."""
        async with session_scope(self._session_factory) as session:
            row = await session.get(AtomicSwapRecord, swap_id)
            return _swap_to_domain(row) if row is not None else None

    async def get_by_secret_hash(self, secret_hash: str) -> Optional[AtomicSwap]:
        async with session_scope(self._session_factory) as session:
            stmt = select(AtomicSwapRecord).where(AtomicSwapRecord.secret_hash == secret_hash)
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _swap_to_domain(row) if row is not None else None

    async def save(self, swap: AtomicSwap) -> AtomicSwap:
        """Persist the current state of a swap.

        Legs are updated in place; events not yet stored are appended.
        Stored events are never modified.
        """
        async with session_scope(self._session_factory) as session:
            row = await session.get(AtomicSwapRecord, swap.swap_id)
            if row is None:
                raise KeyError(swap.swap_id)
            _apply_swap(row, swap)

            leg_rows = {leg_row.leg_index: leg_row for leg_row in row.legs}
            for leg in swap.legs:
                _apply_leg(leg_rows[leg.index], leg)

            stored = {event.event_id for event in row.events}
            for event in swap.events:
                if event.event_id not in stored:
                    row.events.append(_event_to_row(event))
        return swap

    async def find(self, swap_filter: Optional[SwapFilter] = None) -> list[AtomicSwap]:
        """List swaps matching a filter, newest first."""
        swap_filter = swap_filter or SwapFilter()
        stmt = select(AtomicSwapRecord)

        if swap_filter.status is not None:
            stmt = stmt.where(AtomicSwapRecord.status == swap_filter.status.value)
        if swap_filter.participant_id:
            stmt = stmt.where(
                or_(
                    AtomicSwapRecord.initiator_id == swap_filter.participant_id,
                    AtomicSwapRecord.responder_id == swap_filter.participant_id,
                )
            )
        if swap_filter.chain:
            stmt = stmt.where(
                AtomicSwapRecord.legs.any(SwapLegRecord.chain == swap_filter.chain.lower())
            )
        if swap_filter.created_after:
            stmt = stmt.where(AtomicSwapRecord.created_at >= swap_filter.created_after)
        if swap_filter.created_before:
            stmt = stmt.where(AtomicSwapRecord.created_at < swap_filter.created_before)

        stmt = stmt.order_by(AtomicSwapRecord.created_at.desc()).limit(swap_filter.limit)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_swap_to_domain(row) for row in result.scalars().all()]

    async def list_active(self) -> list[AtomicSwap]:
        """All swaps not yet COMPLETED or ROLLED_BACK, oldest first."""
        terminal = [status.value for status in TERMINAL_STATUSES]
        stmt = (
            select(AtomicSwapRecord)
            .where(AtomicSwapRecord.status.not_in(terminal))
            .order_by(AtomicSwapRecord.created_at)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_swap_to_domain(row) for row in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(AtomicSwapRecord.status, func.count()).group_by(AtomicSwapRecord.status)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return {status: count for status, count in result.all()}


# ==========================================================================
# Reservations
# ==========================================================================


def _reservation_to_domain(row: ReservationRecord) -> Reservation:
    return Reservation(
        reservation_id=row.reservation_id,
        ledger_id=row.ledger_id,
        account_id=row.account_id,
        asset_id=row.asset_id,
        amount=Decimal(row.amount),
        created_at=row.created_at,
        expires_at=row.expires_at,
        state=ReservationState(row.state),
        owner_ref=row.owner_ref,
        hash_lock=row.hash_lock,
        recipient_id=row.recipient_id,
        lock_ref=row.lock_ref,
        lock_tx_hash=row.lock_tx_hash,
        claim_ref=row.claim_ref,
        refund_ref=row.refund_ref,
        released_at=row.released_at,
    )


def _apply_reservation(row: ReservationRecord, reservation: Reservation) -> None:
    row.ledger_id = reservation.ledger_id
    row.account_id = reservation.account_id
    row.asset_id = reservation.asset_id
    row.amount = reservation.amount
    row.created_at = reservation.created_at
    row.expires_at = reservation.expires_at
    row.state = reservation.state.value
    row.owner_ref = reservation.owner_ref
    row.hash_lock = reservation.hash_lock
    row.recipient_id = reservation.recipient_id
    row.lock_ref = reservation.lock_ref
    row.lock_tx_hash = reservation.lock_tx_hash
    row.claim_ref = reservation.claim_ref
    row.refund_ref = reservation.refund_ref
    row.released_at = reservation.released_at


class ReservationRepository:
    """Persistence for balance reservations."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session_factory()

    async def add(self, reservation: Reservation) -> Reservation:
        async with session_scope(self._session_factory) as session:
            row = ReservationRecord(reservation_id=reservation.reservation_id)
            _apply_reservation(row, reservation)
            session.add(row)
        return reservation

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        async with session_scope(self._session_factory) as session:
            row = await session.get(ReservationRecord, reservation_id)
            return _reservation_to_domain(row) if row is not None else None

    async def save(self, reservation: Reservation) -> Reservation:
        async with session_scope(self._session_factory) as session:
            row = await session.get(ReservationRecord, reservation.reservation_id)
            if row is None:
                raise KeyError(reservation.reservation_id)
            _apply_reservation(row, reservation)
        return reservation

    async def sum_active(
        self, ledger_id: str, account_id: str, asset_id: str, now: datetime
    ) -> Decimal:
        """Total of unexpired RESERVED holds on (ledger, account, asset)."""
        stmt = select(func.coalesce(func.sum(ReservationRecord.amount), 0)).where(
            ReservationRecord.ledger_id == ledger_id,
            ReservationRecord.account_id == account_id,
            ReservationRecord.asset_id == asset_id,
            ReservationRecord.state == ReservationState.RESERVED.value,
            ReservationRecord.expires_at > now,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return Decimal(str(result.scalar_one()))

    async def list_for_owner(self, owner_ref: str) -> list[Reservation]:
        stmt = (
            select(ReservationRecord)
            .where(ReservationRecord.owner_ref == owner_ref)
            .order_by(ReservationRecord.created_at)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_reservation_to_domain(row) for row in result.scalars().all()]

    async def list_expired(self, now: datetime) -> list[Reservation]:
        """RESERVED or LOCKED reservations whose expiry has passed."""
        stmt = (
            select(ReservationRecord)
            .where(
                ReservationRecord.state.in_(
                    [ReservationState.RESERVED.value, ReservationState.LOCKED.value]
                ),
                ReservationRecord.expires_at <= now,
            )
            .order_by(ReservationRecord.expires_at)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_reservation_to_domain(row) for row in result.scalars().all()]

    async def purge_released(self, before: datetime) -> int:
        """Delete released, unlocked and expired rows released before ``before``."""
        stmt = delete(ReservationRecord).where(
            ReservationRecord.state.in_(
                [
                    ReservationState.RELEASED.value,
                    ReservationState.UNLOCKED.value,
                    ReservationState.EXPIRED.value,
                ]
            ),
            ReservationRecord.released_at.is_not(None),
            ReservationRecord.released_at < before,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount or 0


# ==========================================================================
# Confirmation records
# ==========================================================================


def _record_to_domain(row: ConfirmationRecordRow) -> ConfirmationRecord:
    return ConfirmationRecord(
        record_id=row.record_id,
        sequence=row.sequence,
        swap_id=row.swap_id,
        leg_index=row.leg_index,
        status=ConfirmationStatus(row.status),
        chain=row.chain,
        asset_id=row.asset_id,
        amount=Decimal(row.amount),
        created_at=row.created_at,
        tx_hash=row.tx_hash,
        compensates=row.compensates,
        reason=row.reason,
    )


class ConfirmationRepository:
    """Insert-only persistence for confirmation records."""

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session_factory()

    async def insert(
        self,
        record_id: str,
        swap_id: str,
        leg_index: int,
        status: ConfirmationStatus,
        chain: str,
        asset_id: str,
        amount: Decimal,
        created_at: datetime,
        tx_hash: Optional[str] = None,
        compensates: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ConfirmationRecord:
        """Insert a record; the database assigns its sequence number."""
        async with session_scope(self._session_factory) as session:
            row = ConfirmationRecordRow(
                record_id=record_id,
                swap_id=swap_id,
                leg_index=leg_index,
                status=status.value,
                chain=chain,
                asset_id=asset_id,
                amount=amount,
                tx_hash=tx_hash,
                compensates=compensates,
                reason=reason,
                created_at=created_at,
            )
            session.add(row)
            await session.flush()
            return _record_to_domain(row)

    async def get(self, record_id: str) -> Optional[ConfirmationRecord]:
        stmt = select(ConfirmationRecordRow).where(ConfirmationRecordRow.record_id == record_id)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            return _record_to_domain(row) if row is not None else None

    async def list_for_swap(self, swap_id: str) -> list[ConfirmationRecord]:
        stmt = (
            select(ConfirmationRecordRow)
            .where(ConfirmationRecordRow.swap_id == swap_id)
            .order_by(ConfirmationRecordRow.sequence)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_domain(row) for row in result.scalars().all()]

    async def list_between(self, start: datetime, end: datetime) -> list[ConfirmationRecord]:
        stmt = (
            select(ConfirmationRecordRow)
            .where(
                ConfirmationRecordRow.created_at >= start,
                ConfirmationRecordRow.created_at < end,
            )
            .order_by(ConfirmationRecordRow.sequence)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [_record_to_domain(row) for row in result.scalars().all()]
