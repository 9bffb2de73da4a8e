import pytest
from sqlalchemy import select

from conftest import TOMORROW
from studio_service.models import ItemStatus, Order, OrderItem, OrderStatus, Payment


async def _order_status(session_factory, order_id):
    async with session_factory() as db:
        order = await db.get(Order, order_id)
        res = await db.execute(select(OrderItem.status).where(OrderItem.order_id == order_id))
        return order.status, {row.status for row in res}


@pytest.mark.asyncio
async def test_json_callback_settles_order(client, session_factory, make_order, notifier, provider):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.states[ref] = "Succeeded"

    resp = await client.post("/webhooks/barion", json={"PaymentId": ref, "PaymentState": "Succeeded"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert await _order_status(session_factory, order_id) == (OrderStatus.PAID, {ItemStatus.BOOKED})
    assert len(notifier.of_type("booking.confirmed")) == 1


@pytest.mark.asyncio
async def test_callback_without_state_asks_the_provider(client, session_factory, make_order, provider):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.states[ref] = "Canceled"

    resp = await client.post("/webhooks/barion", json={"PaymentId": ref})

    assert resp.status_code == 200
    assert provider.state_calls == [ref]
    assert (await _order_status(session_factory, order_id))[0] == OrderStatus.CANCELLED
    async with session_factory() as db:
        res = await db.execute(select(Payment).where(Payment.provider_ref == ref))
        payment = res.scalar_one()
    assert payment.status == "Canceled"
    assert payment.payload_json["Status"] == "Canceled"


@pytest.mark.asyncio
async def test_form_encoded_callback(client, session_factory, make_order, provider):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.states[ref] = "Succeeded"

    resp = await client.post("/webhooks/barion", data={"PaymentId": ref})

    assert resp.status_code == 200
    assert (await _order_status(session_factory, order_id))[0] == OrderStatus.PAID


@pytest.mark.asyncio
async def test_duplicate_callbacks_settle_once(client, make_order, notifier, provider):
    _, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.states[ref] = "Succeeded"

    for _ in range(3):
        resp = await client.post("/webhooks/barion", json={"PaymentId": ref, "PaymentState": "Succeeded"})
        assert resp.status_code == 200

    assert len(notifier.of_type("booking.confirmed")) == 1


@pytest.mark.asyncio
async def test_unknown_payment_is_acknowledged(client):
    resp = await client.post("/webhooks/barion", json={"PaymentId": "pay-unknown", "PaymentState": "Succeeded"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"PaymentId": ""}, {"PaymentState": "Succeeded"}])
async def test_missing_payment_id_is_400(client, body):
    resp = await client.post("/webhooks/barion", json=body)

    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_provider_outage_during_callback_is_acknowledged(client, session_factory, make_order, provider):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.fail_state = True

    resp = await client.post("/webhooks/barion", json={"PaymentId": ref})

    assert resp.status_code == 200
    assert (await _order_status(session_factory, order_id))[0] == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_reported_success_is_confirmed_with_the_provider(client, session_factory, make_order, provider, notifier):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])
    provider.states[ref] = "Prepared"

    resp = await client.post("/webhooks/barion", json={"PaymentId": ref, "PaymentState": "Succeeded"})

    assert resp.status_code == 200
    assert provider.state_calls == [ref]
    assert await _order_status(session_factory, order_id) == (OrderStatus.PENDING, {ItemStatus.PENDING})
    assert notifier.of_type("booking.confirmed") == []


@pytest.mark.asyncio
async def test_reported_failure_is_applied_without_a_provider_call(client, session_factory, make_order, provider):
    order_id, ref = await make_order([("studio-a", TOMORROW, "10:00", ItemStatus.PENDING)])

    resp = await client.post("/webhooks/barion", json={"PaymentId": ref, "PaymentState": "Expired"})

    assert resp.status_code == 200
    assert provider.state_calls == []
    assert (await _order_status(session_factory, order_id))[0] == OrderStatus.EXPIRED
