"""Error taxonomy for the swap engine and reservation ledger."""

from typing import Optional


class SwapError(Exception):
    """Base class for all swap-domain errors."""

    code = "swap_error"

    def __init__(self, message: str, swap_id: Optional[str] = None):
        self.swap_id = swap_id
        super().__init__(message)


class ValidationError(SwapError):
    """The request or call arguments are invalid."""

    code = "validation_error"


class LockOrderingError(ValidationError):
    """Responder leg requested before the initiator leg is confirmed."""

    code = "lock_ordering"


class SwapNotFoundError(SwapError):
    code = "swap_not_found"


class InvalidTransitionError(SwapError):
    """The swap is not in a state that allows the requested operation."""

    code = "invalid_transition"


class InsufficientBalanceError(SwapError):
    code = "insufficient_balance"


class ReservationNotFoundError(SwapError):
    code = "reservation_not_found"


class LockFailedError(SwapError):
    """A leg could not be locked (hash already used, lock rejected, expired reservation)."""

    code = "lock_failed"


class LockOutcomeUnknownError(LockFailedError):
    """Lock retries ran out on transient errors; the ledger may have applied it."""

    code = "lock_outcome_unknown"


class ClaimFailedError(SwapError):
    """A leg could not be claimed (wrong secret, refunded, timelock expired)."""

    code = "claim_failed"


class SwapTimeoutError(SwapError):
    """The swap deadline passed before the operation could run."""

    code = "timeout"


class RollbackFailedError(SwapError):
    """Refunds exhausted their retries; the swap stays ROLLING_BACK for an operator."""

    code = "rollback_failed"
