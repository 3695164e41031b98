from .exceptions import (
    LockAcquireTimeout,
    PaymentStatusRejected,
    PaymentStatusUnavailable,
    ReservationError,
    ReservationMismatch,
    ReservationStateConflict,
    SessionStateConflict,
    StateConflict,
    StockInsufficient,
    UnknownSku,
)
from .locking import exclusive, lock

__all__ = [
    "lock",
    "exclusive",
    "ReservationError",
    "StockInsufficient",
    "UnknownSku",
    "ReservationMismatch",
    "StateConflict",
    "SessionStateConflict",
    "ReservationStateConflict",
    "PaymentStatusUnavailable",
    "PaymentStatusRejected",
    "LockAcquireTimeout",
]
