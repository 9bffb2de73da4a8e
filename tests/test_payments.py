import json

import httpx
import pytest
import respx

from conftest import FakeRedis
from studio_service.breaker import CircuitBreaker
from studio_service.errors import UpstreamPaymentError
from studio_service.payments import BarionClient, PaymentLine

BASE = "https://api.test.barion.com"


def _client(redis=None, **overrides):
    kwargs = dict(
        base_url=BASE,
        pos_key="pos-key",
        payee_email="studio@example.com",
        frontend_url="https://studio.example.com",
        backend_url="https://api.studio.example.com",
        breaker=CircuitBreaker("barion", redis=redis, failure_threshold=2, reset_timeout_seconds=30),
    )
    kwargs.update(overrides)
    return BarionClient(**kwargs)


LINES = [
    PaymentLine(name="Studio A - 2025-06-10 10:00-11:00", description="Photo studio booking", unit_price=15000),
    PaymentLine(name="Studio A - 2025-06-10 11:00-12:00", description="Photo studio booking", unit_price=15000),
]


@pytest.mark.asyncio
@respx.mock
async def test_start_payment_request_shape():
    route = respx.post(f"{BASE}/v2/Payment/Start").mock(
        return_value=httpx.Response(
            200, json={"PaymentId": "p-123", "GatewayUrl": "https://secure.test.barion.com/Pay?Id=p-123", "Status": "Prepared"}
        )
    )

    started = await _client().start_payment("order-uuid", LINES, 30000, "HUF", "hu-HU", payer_email="anna@example.com")

    assert started.payment_id == "p-123"
    assert started.redirect_url.endswith("p-123")
    body = json.loads(route.calls.last.request.content)
    assert body["POSKey"] == "pos-key"
    assert body["PaymentRequestId"] == "order-order-uuid"
    assert body["Locale"] == "hu-HU"
    assert body["Currency"] == "HUF"
    assert body["RedirectUrl"] == "https://studio.example.com/payment/result?orderId=order-uuid"
    assert body["CallbackUrl"] == "https://api.studio.example.com/webhooks/barion"
    assert body["PayerHint"] == "anna@example.com"
    transaction = body["Transactions"][0]
    assert transaction["POSTransactionId"] == "trans-order-uuid"
    assert transaction["Payee"] == "studio@example.com"
    assert transaction["Total"] == 30000
    assert [i["SKU"] for i in transaction["Items"]] == ["item-1", "item-2"]
    assert transaction["Items"][0]["ItemTotal"] == 15000


@pytest.mark.asyncio
@respx.mock
async def test_start_payment_error_status():
    respx.post(f"{BASE}/v2/Payment/Start").mock(return_value=httpx.Response(400, json={"Errors": [{"ErrorCode": "X"}]}))

    with pytest.raises(UpstreamPaymentError) as exc:
        await _client().start_payment("o1", LINES, 30000, "HUF", "hu-HU")

    assert exc.value.status_code == 502
    assert exc.value.details["status"] == 400


@pytest.mark.asyncio
@respx.mock
async def test_start_payment_timeout():
    respx.post(f"{BASE}/v2/Payment/Start").mock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(UpstreamPaymentError):
        await _client().start_payment("o1", LINES, 30000, "HUF", "hu-HU")


@pytest.mark.asyncio
@respx.mock
async def test_start_payment_without_payment_id():
    respx.post(f"{BASE}/v2/Payment/Start").mock(
        return_value=httpx.Response(200, json={"Errors": [{"Title": "Invalid POSKey"}]})
    )

    with pytest.raises(UpstreamPaymentError) as exc:
        await _client().start_payment("o1", LINES, 30000, "HUF", "hu-HU")
    assert exc.value.details["errors"] == [{"Title": "Invalid POSKey"}]


@pytest.mark.asyncio
async def test_start_payment_requires_configuration():
    with pytest.raises(UpstreamPaymentError):
        await _client(pos_key="").start_payment("o1", LINES, 30000, "HUF", "hu-HU")


@pytest.mark.asyncio
@respx.mock
async def test_get_payment_state():
    route = respx.get(f"{BASE}/v2/Payment/GetPaymentState").mock(
        return_value=httpx.Response(200, json={"PaymentId": "p-123", "Status": "Succeeded"})
    )

    state = await _client().get_payment_state("p-123")

    assert state.status == "Succeeded"
    assert route.calls.last.request.url.params["PaymentId"] == "p-123"
    assert route.calls.last.request.url.params["POSKey"] == "pos-key"


@pytest.mark.asyncio
@respx.mock
async def test_get_payment_state_without_status():
    respx.get(f"{BASE}/v2/Payment/GetPaymentState").mock(return_value=httpx.Response(200, json={}))

    with pytest.raises(UpstreamPaymentError):
        await _client().get_payment_state("p-123")


@pytest.mark.asyncio
@respx.mock
async def test_repeated_failures_open_the_breaker():
    route = respx.post(f"{BASE}/v2/Payment/Start").mock(return_value=httpx.Response(503))
    client = _client(redis=FakeRedis())

    for _ in range(2):
        with pytest.raises(UpstreamPaymentError):
            await client.start_payment("o1", LINES, 30000, "HUF", "hu-HU")

    with pytest.raises(UpstreamPaymentError) as exc:
        await client.start_payment("o1", LINES, 30000, "HUF", "hu-HU")

    assert "OPEN" in exc.value.message
    assert route.call_count == 2
