"""SQLAlchemy models for swap state, reservations and confirmation records.

Datetimes are stored as naive UTC. JSON blobs (progress sub-stages, rollback
descriptor, event data) are kept in Text columns.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from atomicswap.swap.models import LegState, ReservationState, SwapStage, SwapStatus


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class AtomicSwapRecord(Base):
    """Persisted atomic swap."""

    __tablename__ = "atomic_swaps"

    swap_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    initiator_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    responder_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    secret_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sealed_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Fernet encrypted
    status: Mapped[str] = mapped_column(
        String(30), default=SwapStatus.PENDING.value, nullable=False, index=True
    )
    auto_rollback: Mapped[bool] = mapped_column(default=True)

    # Progress
    stage: Mapped[str] = mapped_column(String(30), default=SwapStage.INITIATED.value)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0)
    progress_description: Mapped[str] = mapped_column(Text, default="")
    progress_sub_stages: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    progress_updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    timeout_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    rollback: Mapped[str] = mapped_column(Text, default="{}")  # JSON rollback descriptor
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    legs: Mapped[list["SwapLegRecord"]] = relationship(
        back_populates="swap",
        lazy="selectin",
        order_by="SwapLegRecord.leg_index",
        cascade="all, delete-orphan",
    )
    events: Mapped[list["SwapEventRecord"]] = relationship(
        back_populates="swap",
        lazy="selectin",
        order_by="SwapEventRecord.id",
        cascade="all, delete-orphan",
    )


class SwapLegRecord(Base):
    """One leg of a persisted swap."""

    __tablename__ = "swap_legs"
    __table_args__ = (UniqueConstraint("swap_id", "leg_index", name="uq_swap_legs_swap_index"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(ForeignKey("atomic_swaps.swap_id"), nullable=False)
    leg_index: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = initiator, 1 = responder
    chain: Mapped[str] = mapped_column(String(50), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(255), nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    timelock_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    required_confirmations: Mapped[int] = mapped_column(Integer, default=1)
    confirmations: Mapped[int] = mapped_column(Integer, default=0)
    state: Mapped[str] = mapped_column(String(20), default=LegState.PENDING.value)
    reservation_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    lock_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    lock_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    claim_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    swap: Mapped["AtomicSwapRecord"] = relationship(back_populates="legs")


class SwapEventRecord(Base):
    """Append-only event log of a swap."""

    __tablename__ = "swap_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    swap_id: Mapped[str] = mapped_column(
        ForeignKey("atomic_swaps.swap_id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    leg_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chain: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    data: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Relationships
    swap: Mapped["AtomicSwapRecord"] = relationship(back_populates="events")


class ReservationRecord(Base):
    """Balance reservation ahead of an on-ledger lock."""

    __tablename__ = "reservations"
    __table_args__ = (
        Index("ix_reservations_ledger_account_asset", "ledger_id", "account_id", "asset_id"),
    )

    reservation_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    ledger_id: Mapped[str] = mapped_column(String(50), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), default=ReservationState.RESERVED.value, nullable=False, index=True
    )
    owner_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    hash_lock: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lock_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lock_tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    claim_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ConfirmationRecordRow(Base):
    """Immutable confirmation record. Rows are inserted, never updated."""

    __tablename__ = "confirmation_records"

    sequence: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    record_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    swap_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    leg_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    chain: Mapped[str] = mapped_column(String(50), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    compensates: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
