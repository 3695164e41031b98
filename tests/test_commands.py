from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from stock_reservations import conf
from stock_reservations.models import CheckoutSession, SessionStatus, StockRecord


def test_repair_stock_corrects_drift(ledger):
    ledger.add_sku("A", 5)
    ledger.add_sku("B", 5)
    StockRecord.objects.filter(sku="A").update(reserved=4)
    out = StringIO()

    call_command("repair_stock", stdout=out)

    assert "A: reserved 4 -> 0" in out.getvalue()
    assert "Checked 2 SKUs, corrected 1." in out.getvalue()
    assert StockRecord.objects.get(sku="A").reserved == 0


def test_repair_stock_single_sku(ledger):
    ledger.add_sku("A", 5)
    out = StringIO()

    call_command("repair_stock", "--sku", "A", stdout=out)

    assert "Checked 1 SKUs, corrected 0." in out.getvalue()


def test_repair_stock_unknown_sku():
    with pytest.raises(CommandError):
        call_command("repair_stock", "--sku", "NOPE", stdout=StringIO())


def test_workers_run_expiry_once(ledger, coordinator):
    ledger.add_sku("A", 5)
    result = coordinator.start_checkout([("A", 2)], ttl=60)
    CheckoutSession.objects.filter(pk=result.session_id).update(
        expires_at=result.expires_at - timedelta(hours=1)
    )
    out = StringIO()

    call_command("run_reservation_workers", "--once", "--no-reconcile", stdout=out)

    assert "'sessions_expired': 1" in out.getvalue()
    assert CheckoutSession.objects.get(pk=result.session_id).status == SessionStatus.EXPIRED
    assert StockRecord.objects.get(sku="A").reserved == 0


def test_workers_need_a_payment_provider_to_reconcile():
    from django.core.exceptions import ImproperlyConfigured

    with pytest.raises(ImproperlyConfigured):
        call_command("run_reservation_workers", "--once", stdout=StringIO())


def test_workers_run_reconciliation_once(settings_override):
    settings_override(
        PAYMENT_STATUS_PROVIDER="test_reconciliation.make_provider",
        PAYMENT_STATUS_MIN_INTERVAL=0,
    )
    out = StringIO()

    call_command("run_reservation_workers", "--once", stdout=out)

    assert "expiry:" in out.getvalue()
    assert "'idempotency_purged': 0" in out.getvalue()


# Settings

def test_conf_defaults_and_overrides(settings_override):
    assert conf.get("HOLD_TTL") == timedelta(minutes=15)
    assert conf.get("RECONCILE_BATCH_SIZE") == 50

    settings_override(HOLD_TTL=90, RECONCILE_BATCH_SIZE=10)

    assert conf.get("HOLD_TTL") == timedelta(seconds=90)
    assert conf.get("RECONCILE_BATCH_SIZE") == 10


def test_conf_rejects_unknown_names():
    with pytest.raises(KeyError):
        conf.get("HOLD_TTL_TYPO")


def test_hold_ttl_setting_drives_checkouts(ledger, coordinator, clock, settings_override):
    settings_override(HOLD_TTL=timedelta(minutes=3))
    ledger.add_sku("A", 1)

    result = coordinator.start_checkout([("A", 1)])

    assert result.expires_at == clock() + timedelta(minutes=3)
