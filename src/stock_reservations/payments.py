"""
Payment-status collaborator used by the reconciliation sweeper.

The sweeper only needs `get_status(payment_ref) -> PaymentStatus`. Lookups
that cannot be answered right now raise PaymentStatusUnavailable (retried on
the next sweep); lookups the provider refuses for good raise
PaymentStatusRejected (treated as a failed payment).
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Protocol
from urllib.parse import quote

import httpx

from .exceptions import PaymentStatusRejected, PaymentStatusUnavailable

logger = logging.getLogger(__name__)


class PaymentStatus(str, enum.Enum):
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


class PaymentStatusProvider(Protocol):
    def get_status(self, payment_ref: str) -> PaymentStatus: ...


class RateLimitedProvider:
    """
    Spaces calls to a provider at least `min_interval` seconds apart.

    Thread-safe; callers wait their turn instead of being rejected.
    """

    def __init__(self, provider: PaymentStatusProvider, min_interval: float, sleep=time.sleep) -> None:
        self.provider = provider
        self.min_interval = min_interval
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    def get_status(self, payment_ref: str) -> PaymentStatus:
        with self._lock:
            if self._last_call is not None:
                wait = self._last_call + self.min_interval - time.monotonic()
                if wait > 0:
                    self._sleep(wait)
            self._last_call = time.monotonic()
        return self.provider.get_status(payment_ref)


# Provider vocabularies differ; everything is folded into the three states.
STATUS_ALIASES = {
    "paid": PaymentStatus.PAID,
    "completed": PaymentStatus.PAID,
    "success": PaymentStatus.PAID,
    "succeeded": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "created": PaymentStatus.PENDING,
}

RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)


class HttpPaymentStatusClient:
    """
    Queries `GET {base_url}/payments/{payment_ref}/status`.

    The response body is JSON with a "status" field. Every request carries a
    timeout; network errors, timeouts, 408/429 and 5xx responses are
    transient, any other non-2xx response or an unknown status is permanent.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_status(self, payment_ref: str) -> PaymentStatus:
        path = f"/payments/{quote(payment_ref, safe='')}/status"
        try:
            response = self._client.get(path)
        except httpx.TimeoutException as exc:
            raise PaymentStatusUnavailable(payment_ref, "timed out") from exc
        except httpx.TransportError as exc:
            raise PaymentStatusUnavailable(payment_ref, str(exc)) from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise PaymentStatusUnavailable(payment_ref, f"HTTP {response.status_code}")
        if response.is_error:
            raise PaymentStatusRejected(payment_ref, f"HTTP {response.status_code}")

        try:
            raw = str(response.json()["status"]).lower()
        except (ValueError, KeyError, TypeError) as exc:
            raise PaymentStatusRejected(payment_ref, "malformed response body") from exc

        status = STATUS_ALIASES.get(raw)
        if status is None:
            raise PaymentStatusRejected(payment_ref, f"unknown status {raw!r}")
        logger.debug(f"Payment {payment_ref} status: {status.value}")
        return status
