"""Atomic swap domain: models, errors, events and hash-lock secrets.

Provides:
- AtomicSwap / AtomicSwapAsset: swap aggregate and its two legs
- SwapError hierarchy
- SwapEventBus: in-process event stream
- SecretManager: hash-lock secrets and sealing at rest

The engine lives in atomicswap.swap.engine.
"""

from atomicswap.swap.errors import (
    ClaimFailedError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LockFailedError,
    LockOrderingError,
    LockOutcomeUnknownError,
    ReservationNotFoundError,
    RollbackFailedError,
    SwapError,
    SwapNotFoundError,
    SwapTimeoutError,
    ValidationError,
)
from atomicswap.swap.events import SwapEvent, SwapEventBus, SwapEventType
from atomicswap.swap.models import (
    AtomicSwap,
    AtomicSwapAsset,
    ConfirmationRecord,
    ConfirmationStatus,
    LegRequest,
    LegState,
    Reservation,
    ReservationResult,
    ReservationState,
    SwapFilter,
    SwapRequest,
    SwapStage,
    SwapStatus,
)
from atomicswap.swap.secrets import SecretManager, create_secret_manager

__all__ = [
    # Models
    "AtomicSwap",
    "AtomicSwapAsset",
    "ConfirmationRecord",
    "ConfirmationStatus",
    "LegRequest",
    "LegState",
    "Reservation",
    "ReservationResult",
    "ReservationState",
    "SwapFilter",
    "SwapRequest",
    "SwapStage",
    "SwapStatus",
    # Events
    "SwapEvent",
    "SwapEventBus",
    "SwapEventType",
    # Secrets
    "SecretManager",
    "create_secret_manager",
    # Errors
    "SwapError",
    "ValidationError",
    "LockOrderingError",
    "SwapNotFoundError",
    "InvalidTransitionError",
    "InsufficientBalanceError",
    "ReservationNotFoundError",
    "LockFailedError",
    "LockOutcomeUnknownError",
    "ClaimFailedError",
    "SwapTimeoutError",
    "RollbackFailedError",
]
