"""Persistence layer: database session management and repositories."""

from atomicswap.ledger.database import close_db, get_db, init_db
from atomicswap.ledger.repository import (
    ConfirmationRepository,
    ReservationRepository,
    SwapRepository,
)

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "SwapRepository",
    "ReservationRepository",
    "ConfirmationRepository",
]
