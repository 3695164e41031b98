import httpx
import pytest

from stock_reservations.exceptions import PaymentStatusRejected, PaymentStatusUnavailable
from stock_reservations.payments import HttpPaymentStatusClient, PaymentStatus, RateLimitedProvider


def _client(handler):
    return HttpPaymentStatusClient(
        "https://payments.example.test/",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("paid", PaymentStatus.PAID),
        ("SUCCEEDED", PaymentStatus.PAID),
        ("declined", PaymentStatus.FAILED),
        ("processing", PaymentStatus.PENDING),
    ],
)
def test_status_is_normalized(raw, expected):
    seen = []

    def handler(request):
        seen.append(request.url.raw_path)
        return httpx.Response(200, json={"status": raw})

    assert _client(handler).get_status("pay_1") == expected
    assert seen == [b"/payments/pay_1/status"]


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_retryable_responses_are_unavailable(status_code):
    client = _client(lambda request: httpx.Response(status_code))

    with pytest.raises(PaymentStatusUnavailable):
        client.get_status("pay_1")


def test_transport_errors_are_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentStatusUnavailable):
        _client(handler).get_status("pay_1")


def test_timeouts_are_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(PaymentStatusUnavailable) as excinfo:
        _client(handler).get_status("pay_1")

    assert excinfo.value.payment_ref == "pay_1"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, json={"error": "not found"}),
        httpx.Response(200, json={"status": "refunded-ish"}),
        httpx.Response(200, json={"state": "paid"}),
        httpx.Response(200, text="not json"),
    ],
)
def test_permanent_failures_are_rejected(response):
    with pytest.raises(PaymentStatusRejected):
        _client(lambda request: response).get_status("pay_1")


class CountingProvider:
    def __init__(self):
        self.calls = 0

    def get_status(self, payment_ref):
        self.calls += 1
        return PaymentStatus.PENDING


def test_rate_limited_provider_spaces_calls():
    sleeps = []
    inner = CountingProvider()
    provider = RateLimitedProvider(inner, min_interval=10.0, sleep=sleeps.append)

    provider.get_status("a")
    provider.get_status("b")

    assert inner.calls == 2
    assert len(sleeps) == 1
    assert 9.0 < sleeps[0] <= 10.0


def test_rate_limited_provider_without_interval_never_sleeps():
    sleeps = []
    provider = RateLimitedProvider(CountingProvider(), min_interval=0, sleep=sleeps.append)

    for ref in ("a", "b", "c"):
        provider.get_status(ref)

    assert sleeps == []
