"""
Django setup shared by the test suite.

Uses PostgreSQL when DATABASE_URL points at one (CI), otherwise a SQLite file
in a temporary directory. A file rather than :memory: so that threads in the
race tests share one database through their own connections.
"""
import os
import tempfile
import threading
from datetime import timedelta
from urllib.parse import urlparse

import pytest


def _database_settings() -> dict:
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        u = urlparse(database_url)
        if u.scheme in {"postgres", "postgresql"}:
            return {
                "ENGINE": "django.db.backends.postgresql",
                "NAME": (u.path or "").lstrip("/"),
                "USER": u.username or "",
                "PASSWORD": u.password or "",
                "HOST": u.hostname or "localhost",
                "PORT": str(u.port or 5432),
                "CONN_MAX_AGE": 0,
            }

    path = os.path.join(tempfile.mkdtemp(prefix="stock-reservations-"), "test.sqlite3")
    return {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": path,
        # Writers queue on the database lock instead of failing fast.
        "OPTIONS": {"timeout": 20, "transaction_mode": "IMMEDIATE"},
    }


def pytest_configure(config):
    from django.conf import settings

    if settings.configured:
        return

    settings.configure(
        SECRET_KEY="test",
        INSTALLED_APPS=["stock_reservations"],
        DATABASES={"default": _database_settings()},
        TIME_ZONE="UTC",
        USE_TZ=True,
        STOCK_RESERVATIONS={},
    )

    import django

    django.setup()


@pytest.fixture(scope="session", autouse=True)
def _migrated():
    from django.core.management import call_command

    call_command("migrate", verbosity=0)


def _truncate() -> None:
    from stock_reservations.models import (
        CheckoutItem,
        CheckoutSession,
        IdempotencyRecord,
        Reservation,
        StockRecord,
    )

    for model in (IdempotencyRecord, Reservation, CheckoutItem, CheckoutSession, StockRecord):
        model.objects.all().delete()


@pytest.fixture(autouse=True)
def _clean_tables():
    from stock_reservations import api, locking

    _truncate()
    yield
    _truncate()
    api.set_default_coordinator(None)
    locking.set_default_backend(None)


@pytest.fixture
def settings_override():
    """Merge values into STOCK_RESERVATIONS for the duration of one test."""
    from django.conf import settings
    from django.test import override_settings

    active = []

    def _override(**values):
        merged = {**getattr(settings, "STOCK_RESERVATIONS", {}), **values}
        override = override_settings(STOCK_RESERVATIONS=merged)
        override.enable()
        active.append(override)

    yield _override
    for override in reversed(active):
        override.disable()


class FakeClock:
    """Callable returning a fixed aware datetime that tests move by hand."""

    def __init__(self, start) -> None:
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    from django.utils import timezone

    return FakeClock(timezone.now().replace(microsecond=0))


@pytest.fixture
def ledger():
    from stock_reservations.ledger import StockLedger

    return StockLedger()


@pytest.fixture
def manager(ledger, clock):
    from stock_reservations.reservations import ReservationManager

    return ReservationManager(ledger, clock=clock)


@pytest.fixture
def coordinator(manager):
    from stock_reservations.checkout import CheckoutCoordinator

    return CheckoutCoordinator(manager)


@pytest.fixture
def make_session(clock):
    """Create a bare checkout session for tests that drive the manager directly."""
    from stock_reservations.models import CheckoutSession

    def _make(**fields):
        fields.setdefault("created_at", clock())
        fields.setdefault("expires_at", clock() + timedelta(minutes=15))
        return CheckoutSession.objects.create(**fields)

    return _make


@pytest.fixture
def run_concurrently():
    """
    Run callables in parallel threads released together by a barrier.

    Returns one ("ok", value) or ("error", exception) per callable, in order.
    Each thread opens and closes its own database connection.
    """
    from django.db import connections

    def _run(*targets, timeout: float = 10.0):
        barrier = threading.Barrier(len(targets))
        results: list = [None] * len(targets)

        def worker(index, target):
            try:
                connections["default"].ensure_connection()
                barrier.wait(timeout=timeout)
                results[index] = ("ok", target())
            except Exception as exc:
                results[index] = ("error", exc)
            finally:
                connections["default"].close()

        threads = [
            threading.Thread(target=worker, args=(index, target), name=f"racer-{index}")
            for index, target in enumerate(targets)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=timeout * 2)
        return results

    return _run
