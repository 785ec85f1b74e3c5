"""Domain models for atomic swaps, reservations and confirmation records."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from atomicswap.swap.errors import InsufficientBalanceError, ValidationError
from atomicswap.swap.events import SwapEvent


class SwapStatus(str, Enum):
    """Status of an atomic swap."""

    PENDING = "pending"
    LOCKING_INITIATOR = "locking_initiator"
    LOCKING_RESPONDER = "locking_responder"
    LOCKED = "locked"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"              # Terminal-pending-rollback
    EXPIRED = "expired"            # Terminal-pending-rollback
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


class SwapStage(str, Enum):
    """Progress stage reported to clients."""

    INITIATED = "initiated"
    LOCKING_ASSETS = "locking_assets"
    ASSETS_LOCKED = "assets_locked"
    COMPLETING_SWAP = "completing_swap"
    SWAP_COMPLETED = "swap_completed"
    FAILED = "failed"
    EXPIRED = "expired"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


class LegState(str, Enum):
    """State of one leg of a swap."""

    PENDING = "pending"
    RESERVED = "reserved"
    LOCKING = "locking"
    LOCKED = "locked"
    CLAIMING = "claiming"
    CLAIMED = "claimed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    RELEASED = "released"


class ReservationState(str, Enum):
    """State of a balance reservation."""

    RESERVED = "reserved"
    LOCKED = "locked"
    RELEASED = "released"
    UNLOCKED = "unlocked"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class ConfirmationStatus(str, Enum):
    """Status carried by a confirmation record."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.ROLLED_BACK})

ROLLBACK_STATUSES = frozenset({SwapStatus.FAILED, SwapStatus.EXPIRED, SwapStatus.ROLLING_BACK})

IN_FLIGHT_STATUSES = frozenset(
    {
        SwapStatus.PENDING,
        SwapStatus.LOCKING_INITIATOR,
        SwapStatus.LOCKING_RESPONDER,
        SwapStatus.LOCKED,
    }
)

# Statuses at or after which the initiator may read the secret
SECRET_VISIBLE_STATUSES = frozenset({SwapStatus.COMPLETING, SwapStatus.COMPLETED})

ALLOWED_TRANSITIONS: dict[SwapStatus, frozenset[SwapStatus]] = {
    SwapStatus.PENDING: frozenset(
        {SwapStatus.LOCKING_INITIATOR, SwapStatus.FAILED, SwapStatus.EXPIRED}
    ),
    SwapStatus.LOCKING_INITIATOR: frozenset(
        {SwapStatus.LOCKING_RESPONDER, SwapStatus.FAILED, SwapStatus.EXPIRED}
    ),
    SwapStatus.LOCKING_RESPONDER: frozenset(
        {SwapStatus.LOCKED, SwapStatus.FAILED, SwapStatus.EXPIRED}
    ),
    SwapStatus.LOCKED: frozenset({SwapStatus.COMPLETING, SwapStatus.FAILED, SwapStatus.EXPIRED}),
    # FAILED/EXPIRED from COMPLETING only while no leg has been claimed
    SwapStatus.COMPLETING: frozenset(
        {SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.EXPIRED}
    ),
    SwapStatus.FAILED: frozenset({SwapStatus.ROLLING_BACK}),
    SwapStatus.EXPIRED: frozenset({SwapStatus.ROLLING_BACK}),
    # Back to COMPLETING only when a leg turns out to be claimed on-ledger
    SwapStatus.ROLLING_BACK: frozenset({SwapStatus.ROLLED_BACK, SwapStatus.COMPLETING}),
    SwapStatus.COMPLETED: frozenset(),
    SwapStatus.ROLLED_BACK: frozenset(),
}

# (percentage, description) per stage
STAGE_PROGRESS: dict[SwapStage, tuple[int, str]] = {
    SwapStage.INITIATED: (10, "Atomic swap initiated - waiting for asset locking to begin"),
    SwapStage.LOCKING_ASSETS: (40, "Locking assets"),
    SwapStage.ASSETS_LOCKED: (70, "Both assets locked - ready for completion"),
    SwapStage.COMPLETING_SWAP: (85, "Claiming both legs with the revealed secret"),
    SwapStage.SWAP_COMPLETED: (100, "Atomic swap completed - ownership transferred"),
    SwapStage.FAILED: (0, "Swap failed"),
    SwapStage.EXPIRED: (0, "Swap expired"),
    SwapStage.ROLLING_BACK: (20, "Rolling back locked assets"),
    SwapStage.ROLLED_BACK: (100, "Assets returned to their original owners"),
}

SUB_STAGES = (
    "swap_initiated",
    "initiator_lock_pending",
    "responder_lock_pending",
    "completion_pending",
    "ownership_transfer_pending",
)


def can_transition(current: SwapStatus, target: SwapStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ==========================================================================
# Requests
# ==========================================================================


@dataclass
class LegRequest:
    """One side of a swap request.

    ``account_id`` defaults to the funding party and ``recipient_id`` to the
    counterparty when not given.
    """

    chain: str
    asset_id: str
    amount: Decimal
    timeout_seconds: int
    account_id: Optional[str] = None
    recipient_id: Optional[str] = None
    required_confirmations: Optional[int] = None


@dataclass
class SwapRequest:
    """Request to initiate an atomic swap."""

    initiator_id: str
    responder_id: str
    initiator_leg: LegRequest
    responder_leg: LegRequest
    secret_hash: Optional[str] = None
    secret: Optional[str] = None
    swap_id: Optional[str] = None
    auto_rollback: bool = True


@dataclass
class SwapFilter:
    """Criteria for listing swaps."""

    status: Optional[SwapStatus] = None
    participant_id: Optional[str] = None
    chain: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = 100


# ==========================================================================
# Swap aggregate
# ==========================================================================


@dataclass
class AtomicSwapAsset:
    """One leg of a swap: an amount of an asset locked on one chain."""

    index: int
    chain: str
    asset_id: str
    amount: Decimal
    account_id: str
    recipient_id: str
    timeout_seconds: int
    timelock_at: datetime
    required_confirmations: int
    state: LegState = LegState.PENDING
    reservation_id: Optional[str] = None
    lock_ref: Optional[str] = None
    lock_tx_hash: Optional[str] = None
    claim_tx_hash: Optional[str] = None
    refund_tx_hash: Optional[str] = None
    confirmations: int = 0
    locked_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def role(self) -> str:
        return "initiator" if self.index == 0 else "responder"

    @property
    def is_confirmed(self) -> bool:
        return self.state in (LegState.LOCKED, LegState.CLAIMING, LegState.CLAIMED) and (
            self.confirmations >= self.required_confirmations
        )

    @property
    def is_settled(self) -> bool:
        return self.state in (LegState.CLAIMED, LegState.REFUNDED, LegState.RELEASED)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "role": self.role,
            "chain": self.chain,
            "asset_id": self.asset_id,
            "amount": str(self.amount),
            "account_id": self.account_id,
            "recipient_id": self.recipient_id,
            "timeout_seconds": self.timeout_seconds,
            "timelock_at": self.timelock_at.isoformat(),
            "required_confirmations": self.required_confirmations,
            "confirmations": self.confirmations,
            "state": self.state.value,
            "reservation_id": self.reservation_id,
            "lock_ref": self.lock_ref,
            "lock_tx_hash": self.lock_tx_hash,
            "claim_tx_hash": self.claim_tx_hash,
            "refund_tx_hash": self.refund_tx_hash,
            "error": self.error,
        }


@dataclass
class SubStage:
    completed: bool = False
    timestamp: Optional[datetime] = None
    tx_hash: Optional[str] = None


@dataclass
class SwapProgress:
    """Client-facing progress of a swap."""

    stage: SwapStage
    percentage: int
    description: str
    last_updated: datetime
    sub_stages: dict[str, SubStage] = field(default_factory=dict)

    @classmethod
    def initial(cls, now: datetime) -> "SwapProgress":
        percentage, description = STAGE_PROGRESS[SwapStage.INITIATED]
        sub_stages = {name: SubStage() for name in SUB_STAGES}
        sub_stages["swap_initiated"] = SubStage(completed=True, timestamp=now)
        return cls(SwapStage.INITIATED, percentage, description, now, sub_stages)

    def move_to(self, stage: SwapStage, now: datetime, description: Optional[str] = None) -> None:
        percentage, default_description = STAGE_PROGRESS[stage]
        self.stage = stage
        self.percentage = percentage
        self.description = description or default_description
        self.last_updated = now

    def complete_sub_stage(self, name: str, now: datetime, tx_hash: Optional[str] = None) -> None:
        self.sub_stages[name] = SubStage(completed=True, timestamp=now, tx_hash=tx_hash)
        self.last_updated = now

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "percentage": self.percentage,
            "description": self.description,
            "last_updated": self.last_updated.isoformat(),
            "sub_stages": {
                name: {
                    "completed": sub.completed,
                    "timestamp": sub.timestamp.isoformat() if sub.timestamp else None,
                    "tx_hash": sub.tx_hash,
                }
                for name, sub in self.sub_stages.items()
            },
        }


@dataclass
class RollbackInfo:
    """Rollback descriptor of a swap."""

    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    escalated: bool = False
    # leg index -> {"required": bool, "completed": bool}
    unlock: dict[int, dict[str, bool]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "attempts": self.attempts,
            "escalated": self.escalated,
            "unlock": {str(k): v for k, v in self.unlock.items()},
        }


@dataclass
class AtomicSwap:
    """A two-leg cross-chain swap guarded by one hash lock."""

    swap_id: str
    initiator_id: str
    responder_id: str
    legs: list[AtomicSwapAsset]
    secret_hash: str
    status: SwapStatus
    progress: SwapProgress
    timeout_at: datetime
    created_at: datetime
    updated_at: datetime
    sealed_secret: Optional[str] = None
    auto_rollback: bool = True
    rollback: RollbackInfo = field(default_factory=RollbackInfo)
    failure_reason: Optional[str] = None
    events: list[SwapEvent] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def initiator_leg(self) -> AtomicSwapAsset:
        return self.legs[0]

    @property
    def responder_leg(self) -> AtomicSwapAsset:
        return self.legs[1]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def claimed_legs(self) -> list[AtomicSwapAsset]:
        return [leg for leg in self.legs if leg.state == LegState.CLAIMED]

    @property
    def timelocks(self) -> dict[str, datetime]:
        """Absolute timelock per chain."""
        return {leg.chain: leg.timelock_at for leg in self.legs}

    def leg(self, index: int) -> AtomicSwapAsset:
        return self.legs[index]

    def is_participant(self, party_id: Optional[str]) -> bool:
        return party_id is not None and party_id in (self.initiator_id, self.responder_id)

    def to_dict(self, secret: Optional[str] = None) -> dict:
        """Snapshot for callers. The sealed secret is never included."""
        data: dict[str, Any] = {
            "swap_id": self.swap_id,
            "initiator_id": self.initiator_id,
            "responder_id": self.responder_id,
            "status": self.status.value,
            "secret_hash": self.secret_hash,
            "progress": self.progress.to_dict(),
            "legs": [leg.to_dict() for leg in self.legs],
            "timeout_at": self.timeout_at.isoformat(),
            "timelocks": {chain: ts.isoformat() for chain, ts in self.timelocks.items()},
            "auto_rollback": self.auto_rollback,
            "rollback": self.rollback.to_dict(),
            "failure_reason": self.failure_reason,
            "events": [event.to_dict() for event in self.events],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }
        if secret is not None:
            data["secret"] = secret
        return data


# ==========================================================================
# Reservations
# ==========================================================================


@dataclass
class Reservation:
    """A time-bounded hold on balance ahead of an on-ledger lock."""

    reservation_id: str
    ledger_id: str
    account_id: str
    asset_id: str
    amount: Decimal
    created_at: datetime
    expires_at: datetime
    state: ReservationState = ReservationState.RESERVED
    owner_ref: Optional[str] = None
    hash_lock: Optional[str] = None
    recipient_id: Optional[str] = None
    lock_ref: Optional[str] = None
    lock_tx_hash: Optional[str] = None
    claim_ref: Optional[str] = None
    refund_ref: Optional[str] = None
    released_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        """Counts against available balance as a soft hold."""
        return self.state == ReservationState.RESERVED

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class ReservationResult:
    """Outcome of a reserve() call."""

    success: bool
    reservation_id: Optional[str] = None
    reason: Optional[str] = None
    available_balance: Optional[Decimal] = None

    def raise_for_status(self) -> "ReservationResult":
        """Raise InsufficientBalanceError (or ValidationError) on failure."""
        if self.success:
            return self
        if self.reason == "insufficient_balance":
            raise InsufficientBalanceError(
                f"Insufficient balance (available: {self.available_balance})"
            )
        raise ValidationError(f"Reservation failed: {self.reason}")


@dataclass
class AvailabilityResult:
    available: bool
    available_balance: Decimal
    reason: Optional[str] = None


# ==========================================================================
# Confirmation records
# ==========================================================================


@dataclass(frozen=True)
class ConfirmationRecord:
    """Immutable audit entry for one leg outcome."""

    record_id: str
    sequence: int
    swap_id: str
    leg_index: int
    status: ConfirmationStatus
    chain: str
    asset_id: str
    amount: Decimal
    created_at: datetime
    tx_hash: Optional[str] = None
    compensates: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "sequence": self.sequence,
            "swap_id": self.swap_id,
            "leg_index": self.leg_index,
            "status": self.status.value,
            "chain": self.chain,
            "asset_id": self.asset_id,
            "amount": str(self.amount),
            "tx_hash": self.tx_hash,
            "compensates": self.compensates,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }
