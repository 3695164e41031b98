from datetime import timedelta

import pytest

from stock_reservations.exceptions import ReservationStateConflict, StockInsufficient
from stock_reservations.models import (
    CheckoutSession,
    ReleaseReason,
    Reservation,
    ReservationStatus,
    StockRecord,
)


def _reserved(sku):
    return StockRecord.objects.get(sku=sku).reserved


def test_reserve_creates_active_hold(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 5)
    session = make_session()

    reservation = manager.reserve(session.pk, "MUG", 2, ttl=60)

    stored = Reservation.objects.get(pk=reservation.pk)
    assert stored.status == ReservationStatus.ACTIVE
    assert stored.expires_at == clock() + timedelta(seconds=60)
    assert _reserved("MUG") == 2


def test_reserve_uses_default_hold_ttl(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 5)

    reservation = manager.reserve(make_session().pk, "MUG", 1)

    assert reservation.expires_at == clock() + timedelta(minutes=15)


def test_reserve_rejects_non_positive_ttl(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)

    with pytest.raises(ValueError):
        manager.reserve(make_session().pk, "MUG", 1, ttl=0)


def test_reserve_short_stock_writes_nothing(ledger, manager, make_session):
    ledger.add_sku("MUG", 1)

    with pytest.raises(StockInsufficient):
        manager.reserve(make_session().pk, "MUG", 2)

    assert Reservation.objects.count() == 0
    assert _reserved("MUG") == 0


def test_confirm_is_idempotent(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)
    reservation = manager.reserve(make_session().pk, "MUG", 2)

    first = manager.confirm_reservation(reservation.pk)
    second = manager.confirm_reservation(reservation.pk)

    assert first.status == second.status == ReservationStatus.CONFIRMED
    record = StockRecord.objects.get(sku="MUG")
    assert (record.stock, record.reserved) == (3, 0)


def test_confirm_after_release_conflicts(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)
    reservation = manager.reserve(make_session().pk, "MUG", 2)
    manager.release_reservation(reservation.pk)

    with pytest.raises(ReservationStateConflict) as excinfo:
        manager.confirm_reservation(reservation.pk)

    assert excinfo.value.current == ReservationStatus.RELEASED
    assert StockRecord.objects.get(sku="MUG").stock == 5


def test_confirm_missing_reservation(manager):
    import uuid

    with pytest.raises(Reservation.DoesNotExist):
        manager.confirm_reservation(uuid.uuid4())


def test_release_twice_releases_once(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)
    session = make_session()
    other = manager.reserve(make_session().pk, "MUG", 1)
    reservation = manager.reserve(session.pk, "MUG", 2)

    assert manager.release_reservation(reservation.pk) is True
    assert manager.release_reservation(reservation.pk) is False

    stored = Reservation.objects.get(pk=reservation.pk)
    assert stored.status == ReservationStatus.RELEASED
    assert stored.release_reason == ReleaseReason.CANCELLED
    assert stored.resolved_at is not None
    # The other session's hold is untouched.
    assert _reserved("MUG") == other.quantity


def test_release_clears_session_stock_flag(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)
    session = make_session(stock_reserved=True)
    reservation = manager.reserve(session.pk, "MUG", 1)

    manager.release_reservation(reservation.pk, ReleaseReason.PAYMENT_FAILED)

    assert CheckoutSession.objects.get(pk=session.pk).stock_reserved is False


def test_release_of_confirmed_is_noop(ledger, manager, make_session):
    ledger.add_sku("MUG", 5)
    reservation = manager.reserve(make_session().pk, "MUG", 2)
    manager.confirm_reservation(reservation.pk)

    assert manager.release_reservation(reservation.pk) is False
    record = StockRecord.objects.get(sku="MUG")
    assert (record.stock, record.reserved) == (3, 0)


def test_expire_due_releases_only_overdue_holds(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 5)
    short = manager.reserve(make_session().pk, "MUG", 1, ttl=60)
    long = manager.reserve(make_session().pk, "MUG", 2, ttl=3600)

    clock.advance(minutes=5)
    assert manager.expire_due() == 1

    assert Reservation.objects.get(pk=short.pk).status == ReservationStatus.EXPIRED
    assert Reservation.objects.get(pk=short.pk).release_reason == ReleaseReason.EXPIRED
    assert Reservation.objects.get(pk=long.pk).status == ReservationStatus.ACTIVE
    assert _reserved("MUG") == 2
    assert manager.expire_due() == 0


def test_expire_due_respects_limit(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 5)
    for _ in range(3):
        manager.reserve(make_session().pk, "MUG", 1, ttl=1)

    clock.advance(seconds=2)

    assert manager.expire_due(limit=2) == 2
    assert manager.expire_due() == 1
    assert _reserved("MUG") == 0


def test_concurrent_expiry_sweeps_expire_each_hold_once(ledger, manager, make_session, clock, run_concurrently):
    ledger.add_sku("MUG", 10)
    for _ in range(4):
        manager.reserve(make_session().pk, "MUG", 2, ttl=1)
    clock.advance(seconds=5)

    results = run_concurrently(manager.expire_due, manager.expire_due, manager.expire_due)

    assert all(kind == "ok" for kind, _ in results)
    assert sum(value for _, value in results) == 4
    assert _reserved("MUG") == 0
    assert Reservation.objects.filter(status=ReservationStatus.EXPIRED).count() == 4


def test_extend_reservation(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 5)
    reservation = manager.reserve(make_session().pk, "MUG", 1, ttl=60)
    clock.advance(seconds=30)

    assert manager.extend_reservation(reservation.pk, ttl=600) is True
    assert Reservation.objects.get(pk=reservation.pk).expires_at == clock() + timedelta(seconds=600)

    manager.release_reservation(reservation.pk)
    assert manager.extend_reservation(reservation.pk) is False


def test_stats(ledger, manager, make_session, clock):
    ledger.add_sku("MUG", 10)
    overdue = manager.reserve(make_session().pk, "MUG", 1, ttl=60)
    manager.reserve(make_session().pk, "MUG", 1, ttl=120)
    manager.reserve(make_session().pk, "MUG", 1, ttl=3600)
    confirmed = manager.reserve(make_session().pk, "MUG", 1)
    manager.confirm_reservation(confirmed.pk)

    clock.advance(seconds=90)
    stats = manager.stats()

    assert stats["by_status"] == {"active": 3, "confirmed": 1, "released": 0, "expired": 0}
    assert stats["active"] == 3
    assert stats["overdue"] == 1
    assert stats["expiring_within_5min"] == 1
    assert Reservation.objects.get(pk=overdue.pk).status == ReservationStatus.ACTIVE
