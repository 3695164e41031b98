"""
Function-call interface for the web layer.

    reserve(items, ttl) -> {"session_id", "success"[, "failures"]}
    confirm_session(session_id, payment_ref) -> {"session_id", "status"}
    cancel_session(session_id, reason) -> {"session_id", "status"}
    get_availability(sku) -> {"available", "stock", "reserved"}

Each call uses the default coordinator; override it with
`set_default_coordinator` (tests, alternative clocks).
"""
from __future__ import annotations

from .checkout import CheckoutCoordinator
from .models import ReleaseReason

_default_coordinator: CheckoutCoordinator | None = None


def get_default_coordinator() -> CheckoutCoordinator:
    global _default_coordinator
    if _default_coordinator is None:
        _default_coordinator = CheckoutCoordinator()
    return _default_coordinator


def set_default_coordinator(coordinator: CheckoutCoordinator | None) -> None:
    global _default_coordinator
    _default_coordinator = coordinator


def reserve(items, ttl=None) -> dict:
    """
    Start a checkout holding every item, or none.

    `items` is an iterable of (sku, quantity) pairs, {"sku", "quantity"}
    mappings or CartItem instances.
    """
    return get_default_coordinator().start_checkout(items, ttl=ttl).as_dict()


def confirm_session(session_id, payment_ref: str) -> dict:
    """Idempotent: replays of the same payment_ref return the recorded outcome."""
    return get_default_coordinator().mark_paid(session_id, payment_ref).as_dict()


def cancel_session(session_id, reason=ReleaseReason.CANCELLED) -> dict:
    return get_default_coordinator().cancel(session_id, reason).as_dict()


def get_availability(sku: str) -> dict:
    availability = get_default_coordinator().ledger.availability(sku)
    return {
        "available": availability.available,
        "stock": availability.stock,
        "reserved": availability.reserved,
    }
