"""
Checkout Session Coordinator.

Sequences reservations across the lines of a cart and keeps the session
status consistent with them:

    created -> awaiting_payment -> paid | cancelled | expired
    created -> cancelled | expired

Status changes are conditional UPDATEs guarded by the expected current status.
Of mark_paid, cancel and the expiry sweep, the first writer wins; the others
observe the terminal state and return it as their outcome. Within a
transaction the session row is always written before its reservations, and
reservations are visited in SKU order, so concurrent resolutions lock rows in
the same order.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import conf
from .exceptions import SessionStateConflict, StockInsufficient, UnknownSku
from .ledger import check_quantity
from .models import (
    OPEN_SESSION_STATUSES,
    CheckoutItem,
    CheckoutSession,
    IdempotencyRecord,
    ReleaseReason,
    Reservation,
    ReservationStatus,
    SessionStatus,
)
from .reservations import ReservationManager, resolve_ttl

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartItem:
    sku: str
    quantity: int


@dataclass(frozen=True)
class ItemFailure:
    sku: str
    requested: int
    available_stock: int


@dataclass(frozen=True)
class CheckoutResult:
    session_id: uuid.UUID
    success: bool
    status: str
    failures: tuple[ItemFailure, ...] = ()
    expires_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"session_id": str(self.session_id), "success": self.success}
        if self.failures:
            payload["failures"] = [
                {"sku": failure.sku, "available_stock": failure.available_stock}
                for failure in self.failures
            ]
        return payload


@dataclass(frozen=True)
class SessionOutcome:
    """
    Result of a session transition request.

    `changed` is False when another writer had already resolved the session
    (or, for a replayed payment event, when the cached outcome is returned);
    `status` is then the authoritative one.
    """
    session_id: uuid.UUID
    status: str
    changed: bool
    replayed: bool = field(default=False)

    def as_dict(self) -> dict[str, Any]:
        return {"session_id": str(self.session_id), "status": str(self.status)}


def merge_items(items: Iterable) -> list[CartItem]:
    """
    Normalize cart lines to CartItems, merging repeated SKUs.

    Accepts CartItem instances, (sku, quantity) pairs or mappings with "sku"
    and "quantity" keys. First-appearance order is kept.
    """
    merged: dict[str, int] = {}
    for item in items:
        if isinstance(item, CartItem):
            sku, quantity = item.sku, item.quantity
        elif isinstance(item, dict):
            sku, quantity = item["sku"], item["quantity"]
        else:
            sku, quantity = item
        check_quantity(quantity)
        merged[sku] = merged.get(sku, 0) + quantity

    if not merged:
        raise ValueError("a checkout needs at least one item")
    return [CartItem(sku=sku, quantity=quantity) for sku, quantity in merged.items()]


class CheckoutCoordinator:

    def __init__(self, manager: ReservationManager | None = None, clock=None) -> None:
        self.manager = manager or ReservationManager(clock=clock or timezone.now)
        self.clock = clock or self.manager.clock

    @property
    def ledger(self):
        return self.manager.ledger

    def _available(self, sku: str) -> int:
        try:
            return self.ledger.availability(sku).available
        except UnknownSku:
            return 0

    def _transition(self, session_id, allowed, target, filters=None, **changes) -> None:
        """
        Move a session from one of `allowed` to `target`, or raise
        SessionStateConflict with the status that won.
        """
        updated = CheckoutSession.objects.filter(
            pk=session_id, status__in=allowed, **(filters or {})
        ).update(status=target, updated_at=self.clock(), **changes)
        if not updated:
            current = CheckoutSession.objects.get(pk=session_id)
            raise SessionStateConflict(session_id, current.status)

    def _release_holds(self, session_id, reason) -> int:
        held = Reservation.objects.filter(
            session_id=session_id, status=ReservationStatus.ACTIVE
        ).order_by("sku").values_list("pk", flat=True)
        released = 0
        for reservation_id in list(held):
            if self.manager.release_reservation(reservation_id, reason):
                released += 1
        return released

    def start_checkout(self, items, ttl=None) -> CheckoutResult:
        """
        Create a session and reserve every line of the cart, or none of them.

        Once a line fails no further holds are taken; the remaining lines are
        only checked so every short item is reported. Holds already taken in
        this call are then released and the session stays `created`.
        """
        lines = merge_items(items)
        ttl = resolve_ttl(ttl)
        now = self.clock()

        with transaction.atomic():
            session = CheckoutSession.objects.create(
                status=SessionStatus.CREATED, created_at=now, expires_at=now + ttl
            )
            CheckoutItem.objects.bulk_create(
                CheckoutItem(session=session, position=position, sku=line.sku, quantity=line.quantity)
                for position, line in enumerate(lines)
            )

        held: list[Reservation] = []
        failures: list[ItemFailure] = []
        for line in lines:
            if failures:
                available = self._available(line.sku)
                if available < line.quantity:
                    failures.append(ItemFailure(line.sku, line.quantity, available))
                continue
            try:
                held.append(self.manager.reserve(session.pk, line.sku, line.quantity, ttl))
            except StockInsufficient as exc:
                failures.append(ItemFailure(line.sku, line.quantity, exc.available))
            except UnknownSku:
                failures.append(ItemFailure(line.sku, line.quantity, 0))

        if failures:
            for reservation in held:
                self.manager.release_reservation(reservation.pk, ReleaseReason.ROLLBACK)
            short = ", ".join(f"{failure.sku} (available {failure.available_stock})" for failure in failures)
            logger.info(f"Checkout {session.pk} not reserved, short items: {short}")
            return CheckoutResult(session.pk, False, SessionStatus.CREATED, tuple(failures), session.expires_at)

        promoted = CheckoutSession.objects.filter(
            pk=session.pk, status=SessionStatus.CREATED
        ).update(status=SessionStatus.AWAITING_PAYMENT, stock_reserved=True, updated_at=self.clock())
        if not promoted:
            # Resolved by someone else while the holds were being taken.
            for reservation in held:
                self.manager.release_reservation(reservation.pk, ReleaseReason.ROLLBACK)
            current = CheckoutSession.objects.get(pk=session.pk)
            logger.warning(f"Checkout {session.pk} became {current.status} while reserving")
            return CheckoutResult(session.pk, False, current.status, (), session.expires_at)

        logger.info(f"Checkout {session.pk} reserved {len(held)} lines until {session.expires_at.isoformat()}")
        return CheckoutResult(session.pk, True, SessionStatus.AWAITING_PAYMENT, (), session.expires_at)

    def attach_payment(self, session_id, payment_ref: str) -> SessionOutcome:
        """
        Record the payment reference the reconciliation sweeper will query.

        Once a payment is in flight the holds are kept until the
        reconciliation hard deadline, so a slow payment is resolved by the
        sweeper against the provider rather than by the expiry sweep.
        """
        now = self.clock()
        session = CheckoutSession.objects.get(pk=session_id)
        hold_until = max(
            session.expires_at,
            session.created_at + conf.get("RECONCILE_HARD_DEADLINE"),
        )
        try:
            with transaction.atomic():
                self._transition(
                    session_id,
                    (SessionStatus.AWAITING_PAYMENT,),
                    SessionStatus.AWAITING_PAYMENT,
                    filters={"expires_at__gte": now},
                    payment_ref=payment_ref,
                    expires_at=hold_until,
                )
                Reservation.objects.filter(
                    session_id=session_id, status=ReservationStatus.ACTIVE
                ).update(expires_at=hold_until)
        except SessionStateConflict as exc:
            logger.info(f"Payment {payment_ref} not attached: session {session_id} is {exc.current}")
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.info(f"Payment {payment_ref} attached to checkout {session_id}, holds kept until {hold_until.isoformat()}")
        return SessionOutcome(session_id, SessionStatus.AWAITING_PAYMENT, changed=True)

    def _replay(self, payment_ref: str, session_id) -> SessionOutcome | None:
        record = IdempotencyRecord.objects.filter(key=payment_ref).first()
        if record is None:
            return None
        if str(record.session_id) != str(session_id):
            logger.warning(
                f"Payment {payment_ref} was already applied to session {record.session_id}, "
                f"not {session_id}"
            )
        return SessionOutcome(
            record.session_id,
            record.outcome.get("status", SessionStatus.PAID),
            changed=False,
            replayed=True,
        )

    def mark_paid(self, session_id, payment_ref: str) -> SessionOutcome:
        """
        Confirm every hold of the session and mark it paid, once per payment.

        The webhook and the reconciliation sweeper both land here. A replayed
        `payment_ref` returns the recorded outcome without touching the Ledger.
        """
        cached = self._replay(payment_ref, session_id)
        if cached is not None:
            return cached

        outcome = SessionOutcome(session_id, SessionStatus.PAID, changed=True)
        try:
            with transaction.atomic():
                self._transition(
                    session_id,
                    (SessionStatus.AWAITING_PAYMENT,),
                    SessionStatus.PAID,
                    filters={"stock_reserved": True},
                    payment_ref=payment_ref,
                    stock_reserved=False,
                )
                held = Reservation.objects.filter(
                    session_id=session_id, status=ReservationStatus.ACTIVE
                ).order_by("sku").values_list("pk", flat=True)
                for reservation_id in list(held):
                    self.manager.confirm_reservation(reservation_id)
                IdempotencyRecord.objects.create(
                    key=payment_ref,
                    session_id=session_id,
                    outcome=outcome.as_dict(),
                    created_at=self.clock(),
                )
        except IntegrityError:
            # Same event committed by a concurrent delivery.
            cached = self._replay(payment_ref, session_id)
            if cached is None:
                raise
            return cached
        except SessionStateConflict as exc:
            cached = self._replay(payment_ref, session_id)
            if cached is not None:
                return cached
            if exc.current == SessionStatus.AWAITING_PAYMENT:
                return self._refuse_lapsed_payment(session_id, payment_ref)
            logger.warning(
                f"Payment {payment_ref} arrived for session {session_id} which is already {exc.current}"
            )
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.info(f"Checkout {session_id} paid with {payment_ref}")
        return outcome

    def cancel(self, session_id, reason=ReleaseReason.CANCELLED) -> SessionOutcome:
        """Release every hold of an open session and mark it cancelled."""
        reason = ReleaseReason(reason)
        try:
            with transaction.atomic():
                self._transition(
                    session_id,
                    OPEN_SESSION_STATUSES,
                    SessionStatus.CANCELLED,
                    closed_reason=reason,
                    stock_reserved=False,
                )
                released = self._release_holds(session_id, reason)
        except SessionStateConflict as exc:
            logger.info(f"Cancel of {session_id} ignored, session is already {exc.current}")
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.info(f"Checkout {session_id} cancelled ({reason}), released {released} holds")
        return SessionOutcome(session_id, SessionStatus.CANCELLED, changed=True)

    def _expire_session(self, session_id, filters=None) -> int:
        """Move an open session to expired and release its remaining holds."""
        with transaction.atomic():
            self._transition(
                session_id,
                OPEN_SESSION_STATUSES,
                SessionStatus.EXPIRED,
                filters=filters,
                closed_reason=ReleaseReason.EXPIRED,
                stock_reserved=False,
            )
            return self._release_holds(session_id, ReleaseReason.EXPIRED)

    def _refuse_lapsed_payment(self, session_id, payment_ref: str) -> SessionOutcome:
        """
        Close an awaiting-payment session that lost holds before its payment
        landed. The stock may already be sold to someone else, so the
        session is expired instead of paid and the payment is left for an
        operator to refund.
        """
        try:
            self._expire_session(session_id, filters={"stock_reserved": False})
        except SessionStateConflict as exc:
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.error(
            f"Payment {payment_ref} arrived after the holds of checkout {session_id} lapsed; "
            f"session expired, payment needs a refund"
        )
        return SessionOutcome(session_id, SessionStatus.EXPIRED, changed=False)

    def expire(self, session_id, now=None) -> SessionOutcome:
        """Expire an open session whose `expires_at` has passed and release its holds."""
        now = now or self.clock()
        try:
            released = self._expire_session(session_id, filters={"expires_at__lt": now})
        except SessionStateConflict as exc:
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.info(f"Checkout {session_id} expired, released {released} holds")
        return SessionOutcome(session_id, SessionStatus.EXPIRED, changed=True)

    def expire_due(self, now=None, limit: int | None = None) -> int:
        """Expire open sessions past their expiry. Returns how many this call expired."""
        now = now or self.clock()
        limit = limit or conf.get("EXPIRY_BATCH_SIZE")
        due = list(
            CheckoutSession.objects.filter(
                status__in=OPEN_SESSION_STATUSES, expires_at__lt=now
            ).order_by("expires_at").values_list("pk", flat=True)[:limit]
        )
        expired = sum(1 for session_id in due if self.expire(session_id, now=now).changed)
        if due:
            logger.info(f"Session expiry found {len(due)} due sessions, expired {expired}")
        return expired

    def expire_lapsed_holds(self, now=None, limit: int | None = None) -> int:
        """
        Release active holds past their own expiry. Returns how many this call
        released.

        A lapsed hold takes its open session down with it: the session is
        expired and all of its holds are released, so it can never be paid
        with part of its stock returned. Holds left behind by a closed
        session are released on their own.
        """
        now = now or self.clock()
        limit = limit or conf.get("EXPIRY_BATCH_SIZE")
        due = list(
            Reservation.objects.filter(
                status=ReservationStatus.ACTIVE, expires_at__lt=now
            ).order_by("expires_at").values_list("pk", "session_id")[:limit]
        )

        released = 0
        for session_id in dict.fromkeys(session_id for _, session_id in due):
            try:
                released += self._expire_session(session_id)
            except SessionStateConflict:
                continue
            logger.info(f"Checkout {session_id} expired with a lapsed hold")

        for reservation_id, _ in due:
            if self.manager.release_reservation(reservation_id, ReleaseReason.EXPIRED):
                released += 1

        if due:
            logger.info(f"Hold expiry found {len(due)} lapsed holds, released {released}")
        return released

    def extend(self, session_id, ttl=None) -> SessionOutcome:
        """
        Give an awaiting-payment session and its holds a fresh hold window.

        A session already past its expiry is left for the sweep.
        """
        now = self.clock()
        expires_at = now + resolve_ttl(ttl)
        try:
            with transaction.atomic():
                self._transition(
                    session_id,
                    (SessionStatus.AWAITING_PAYMENT,),
                    SessionStatus.AWAITING_PAYMENT,
                    filters={"expires_at__gte": now},
                    expires_at=expires_at,
                )
                Reservation.objects.filter(
                    session_id=session_id, status=ReservationStatus.ACTIVE
                ).update(expires_at=expires_at)
        except SessionStateConflict as exc:
            return SessionOutcome(session_id, exc.current, changed=False)

        logger.info(f"Checkout {session_id} extended until {expires_at.isoformat()}")
        return SessionOutcome(session_id, SessionStatus.AWAITING_PAYMENT, changed=True)
