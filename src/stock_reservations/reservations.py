"""
Reservation Manager: owns the Reservation lifecycle.

    active -> confirmed | released | expired

Every transition is a status-guarded UPDATE ("only if still active") paired
with the matching Ledger mutation inside one transaction, so a crash can not
leave a reservation resolved while its units are still counted as reserved,
and two callers racing on the same hold mutate the Ledger once.
"""
import logging
from datetime import timedelta

from django.db import transaction
from django.db.models import Count
from django.utils import timezone

from . import conf
from .exceptions import ReservationStateConflict
from .ledger import StockLedger
from .models import CheckoutSession, ReleaseReason, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

EXPIRING_SOON = timedelta(minutes=5)


def resolve_ttl(ttl) -> timedelta:
    ttl = conf.get("HOLD_TTL") if ttl is None else conf.as_timedelta(ttl)
    if ttl <= timedelta(0):
        raise ValueError(f"ttl must be positive, got {ttl!r}")
    return ttl


class ReservationManager:
    """
    The only component that calls the Ledger's mutating operations.

    `clock` returns the current aware datetime; tests substitute a fixed one.
    """

    def __init__(self, ledger: StockLedger | None = None, clock=timezone.now) -> None:
        self.ledger = ledger or StockLedger()
        self.clock = clock

    def reserve(self, session_id, sku: str, quantity: int, ttl=None) -> Reservation:
        """
        Hold `quantity` units of `sku` for a checkout session.

        StockInsufficient and UnknownSku propagate untouched; nothing is
        written in that case.
        """
        ttl = resolve_ttl(ttl)
        now = self.clock()
        with transaction.atomic():
            self.ledger.try_reserve(sku, quantity)
            reservation = Reservation.objects.create(
                session_id=session_id,
                sku=sku,
                quantity=quantity,
                created_at=now,
                expires_at=now + ttl,
            )
        logger.info(
            f"Reservation {reservation.pk} holds {quantity} of sku {sku} "
            f"for session {session_id} until {reservation.expires_at.isoformat()}"
        )
        return reservation

    def confirm_reservation(self, reservation_id) -> Reservation:
        """
        Convert an active hold into a permanent stock decrement.

        Confirming an already confirmed reservation returns it without touching
        the Ledger again. A released or expired reservation raises
        ReservationStateConflict. ReservationMismatch from the Ledger rolls the
        status change back and propagates.
        """
        reservation = Reservation.objects.get(pk=reservation_id)
        now = self.clock()

        with transaction.atomic():
            claimed = Reservation.objects.filter(
                pk=reservation_id, status=ReservationStatus.ACTIVE
            ).update(status=ReservationStatus.CONFIRMED, resolved_at=now)
            if claimed:
                self.ledger.confirm(reservation.sku, reservation.quantity)

        if not claimed:
            current = Reservation.objects.get(pk=reservation_id)
            if current.status == ReservationStatus.CONFIRMED:
                logger.debug(f"Reservation {reservation_id} already confirmed")
                return current
            raise ReservationStateConflict(reservation_id, current.status)

        reservation.status = ReservationStatus.CONFIRMED
        reservation.resolved_at = now
        logger.info(f"Reservation {reservation_id} confirmed ({reservation.quantity} of sku {reservation.sku})")
        return reservation

    def release_reservation(self, reservation_id, reason=ReleaseReason.CANCELLED) -> bool:
        """
        Return an active hold's units to available stock.

        The reservation ends `expired` when the reason is the timeout sweep and
        `released` otherwise. Terminal reservations are left alone.

        Returns True if this call performed the release.
        """
        reason = ReleaseReason(reason)
        target = (
            ReservationStatus.EXPIRED if reason == ReleaseReason.EXPIRED
            else ReservationStatus.RELEASED
        )
        reservation = Reservation.objects.get(pk=reservation_id)
        if reservation.status != ReservationStatus.ACTIVE:
            return False

        with transaction.atomic():
            # Session row first: the coordinator locks sessions before holds.
            CheckoutSession.objects.filter(
                pk=reservation.session_id, stock_reserved=True
            ).update(stock_reserved=False)
            claimed = Reservation.objects.filter(
                pk=reservation_id, status=ReservationStatus.ACTIVE
            ).update(status=target, release_reason=reason, resolved_at=self.clock())
            if claimed:
                self.ledger.release(reservation.sku, reservation.quantity)
            else:
                transaction.set_rollback(True)

        if claimed:
            logger.info(
                f"Reservation {reservation_id} {target} ({reason}), "
                f"returned {reservation.quantity} of sku {reservation.sku}"
            )
        return bool(claimed)

    def extend_reservation(self, reservation_id, ttl=None) -> bool:
        """Push an active hold's expiry to now + ttl. Returns False if it is no longer active."""
        expires_at = self.clock() + resolve_ttl(ttl)
        extended = Reservation.objects.filter(
            pk=reservation_id, status=ReservationStatus.ACTIVE
        ).update(expires_at=expires_at)
        if extended:
            logger.info(f"Reservation {reservation_id} extended until {expires_at.isoformat()}")
        return bool(extended)

    def expire_due(self, now=None, limit: int | None = None) -> int:
        """
        Release every active reservation whose expiry has passed.

        Safe to run concurrently with itself and with cancels: each hold is
        expired by whichever caller wins its status guard. Returns the number
        of reservations this call expired.
        """
        now = now or self.clock()
        limit = limit or conf.get("EXPIRY_BATCH_SIZE")
        due = list(
            Reservation.objects.filter(
                status=ReservationStatus.ACTIVE, expires_at__lt=now
            ).order_by("expires_at").values_list("pk", flat=True)[:limit]
        )

        expired = 0
        for reservation_id in due:
            if self.release_reservation(reservation_id, ReleaseReason.EXPIRED):
                expired += 1

        if due:
            logger.info(f"Expiry sweep found {len(due)} due reservations, expired {expired}")
        return expired

    def stats(self, now=None) -> dict:
        """Reservation counts for monitoring."""
        now = now or self.clock()
        by_status = {status.value: 0 for status in ReservationStatus}
        for row in Reservation.objects.values("status").annotate(count=Count("pk")):
            by_status[row["status"]] = row["count"]

        active = Reservation.objects.filter(status=ReservationStatus.ACTIVE)
        return {
            "by_status": by_status,
            "active": by_status[ReservationStatus.ACTIVE],
            "overdue": active.filter(expires_at__lt=now).count(),
            "expiring_within_5min": active.filter(
                expires_at__gte=now, expires_at__lt=now + EXPIRING_SOON
            ).count(),
        }
