"""
Settings for stock_reservations.

Projects override any of the defaults below through a single dict in their
Django settings module, typically fed from environment variables:

    STOCK_RESERVATIONS = {
        "HOLD_TTL": int(os.environ.get("RESERVATION_EXPIRY_SECONDS", 900)),
        "PAYMENT_STATUS_URL": os.environ["PAYMENT_STATUS_URL"],
    }

Duration settings accept a `timedelta` or a number of seconds.
"""
from datetime import timedelta

from django.conf import settings

SETTINGS_NAME = "STOCK_RESERVATIONS"

DEFAULTS = {
    # Hold window granted to a checkout session and its reservations.
    "HOLD_TTL": timedelta(minutes=15),
    # Worker loop cadence, in seconds.
    "EXPIRY_SWEEP_INTERVAL": 120,
    "RECONCILE_INTERVAL": 300,
    # Reconciliation only looks at sessions older than this...
    "RECONCILE_LOOKBACK": timedelta(minutes=10),
    # ...and cancels sessions still pending after this.
    "RECONCILE_HARD_DEADLINE": timedelta(minutes=60),
    "RECONCILE_BATCH_SIZE": 50,
    "EXPIRY_BATCH_SIZE": 500,
    "IDEMPOTENCY_RETENTION": timedelta(days=30),
    # Payment-status collaborator.
    "PAYMENT_STATUS_URL": None,
    "PAYMENT_STATUS_TIMEOUT": 5.0,
    "PAYMENT_STATUS_MIN_INTERVAL": 0.5,
    "PAYMENT_STATUS_PROVIDER": None,
    # "auto", "postgres" or "local".
    "LOCK_BACKEND": "auto",
}

DURATION_SETTINGS = frozenset(
    {"HOLD_TTL", "RECONCILE_LOOKBACK", "RECONCILE_HARD_DEADLINE", "IDEMPOTENCY_RETENTION"}
)


def as_timedelta(value) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def get(name: str):
    """Return a setting, falling back to the package default."""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown {SETTINGS_NAME} setting: {name!r}")
    overrides = getattr(settings, SETTINGS_NAME, {}) or {}
    value = overrides.get(name, DEFAULTS[name])
    if name in DURATION_SETTINGS:
        return as_timedelta(value)
    return value
