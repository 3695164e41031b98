"""
Exception hierarchy for stock_reservations.

Callers are encouraged to catch `ReservationError` when they want to handle
every failure raised by the reservation core, or a specific subclass such as
`StockInsufficient` when they need to show "out of stock" to a buyer.

Two families exist:

- business outcomes the caller is expected to handle (`StockInsufficient`,
  the state conflicts);
- consistency or infrastructure failures that are logged and surfaced to an
  operator (`ReservationMismatch`, `PaymentStatusUnavailable`).
"""


class ReservationError(Exception):
    """
    Base exception for all stock_reservations errors.

    Example
    -------
    >>> try:
    ...     ledger.try_reserve("TSHIRT-M", 2)
    ... except ReservationError:
    ...     handle_failure()
    """

    #: Stable error code for programmatic handling.
    code: str = "reservation_error"

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = "An unspecified stock reservation error occurred."
        super().__init__(message)


class StockInsufficient(ReservationError):
    """
    Raised when a reserve asks for more units than are currently available.

    Recoverable: the web layer turns this into an "out of stock" message.
    `available` is the count observed right after the conditional update
    failed, so it is a hint, not a promise.
    """

    code: str = "stock_insufficient"

    def __init__(self, sku: str, requested: int, available: int) -> None:
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for sku='{sku}': "
            f"requested={requested}, available={available}"
        )


class UnknownSku(ReservationError):
    """Raised when no stock record exists for a SKU."""

    code: str = "unknown_sku"

    def __init__(self, sku: str) -> None:
        self.sku = sku
        super().__init__(f"No stock record for sku='{sku}'")


class ReservationMismatch(ReservationError):
    """
    Raised when a confirm finds fewer reserved units than the hold claims.

    This signals a corrupted or already-resolved reservation. It is never
    silently clamped; the enclosing transaction rolls back and the error is
    propagated so an operator can run a repair.
    """

    code: str = "reservation_mismatch"

    def __init__(self, sku: str, quantity: int, detail: str | None = None) -> None:
        self.sku = sku
        self.quantity = quantity
        message = f"Ledger state for sku='{sku}' cannot cover quantity={quantity}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StateConflict(ReservationError):
    """
    Raised when a status-guarded transition loses its race.

    The authoritative outcome already exists, so the coordinator treats this
    as a benign no-op for the losing caller.
    """

    code: str = "state_conflict"

    def __init__(self, object_id, current: str, message: str | None = None) -> None:
        self.object_id = object_id
        self.current = current
        super().__init__(message or f"{object_id} is already {current}")


class SessionStateConflict(StateConflict):
    """A checkout session transition lost against another writer."""

    code: str = "session_state_conflict"

    def __init__(self, session_id, current: str) -> None:
        super().__init__(
            session_id,
            current,
            f"Checkout session {session_id} is already '{current}'",
        )

    @property
    def session_id(self):
        return self.object_id


class ReservationStateConflict(StateConflict):
    """A confirm reached a reservation that was released or expired."""

    code: str = "reservation_state_conflict"

    def __init__(self, reservation_id, current: str) -> None:
        super().__init__(
            reservation_id,
            current,
            f"Reservation {reservation_id} is '{current}' and cannot be confirmed",
        )


class PaymentStatusUnavailable(ReservationError):
    """
    Raised when the payment-status collaborator is unreachable or timed out.

    Transient: the reconciliation sweeper logs it and retries the session on
    its next interval. A single occurrence never forces a terminal state.
    """

    code: str = "payment_status_unavailable"

    def __init__(self, payment_ref: str, detail: str | None = None) -> None:
        self.payment_ref = payment_ref
        message = f"Payment status for '{payment_ref}' is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PaymentStatusRejected(ReservationError):
    """
    Raised when the payment-status collaborator permanently refuses a lookup.

    The sweeper treats the payment as failed.
    """

    code: str = "payment_status_rejected"

    def __init__(self, payment_ref: str, detail: str | None = None) -> None:
        self.payment_ref = payment_ref
        message = f"Payment status lookup for '{payment_ref}' was rejected"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LockAcquireTimeout(ReservationError):
    """
    Raised when a business-key lock cannot be acquired within the timeout.

    Typically another worker is running the same sweep.

    Example
    -------
    >>> try:
    ...     with lock("stock-reservations:expiry-sweep", timeout=0):
    ...         sweep()
    ... except LockAcquireTimeout:
    ...     pass
    """

    code: str = "lock_acquire_timeout"
