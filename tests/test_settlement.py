import asyncio
import re
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from conftest import FakeInvoicer, TOMORROW
from studio_service.errors import NotFound
from studio_service.models import Invoice, ItemStatus, Order, OrderItem, OrderStatus, Payment
from studio_service.settlement import CHECKIN_ALPHABET, SettlementReconciler, booking_reference


async def _state(session_factory, order_id):
    async with session_factory() as db:
        order = await db.get(Order, order_id)
        res = await db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.start_time)
        )
        return order, list(res.scalars().all())


async def _invoices(session_factory, order_id):
    async with session_factory() as db:
        res = await db.execute(select(Invoice).where(Invoice.order_id == order_id))
        return list(res.scalars().all())


TWO_PENDING = [
    ("studio-a", TOMORROW, "10:00", ItemStatus.PENDING),
    ("studio-a", TOMORROW, "11:00", ItemStatus.PENDING),
]


@pytest.mark.asyncio
async def test_success_books_every_item(session_factory, make_order, reconciler, notifier, invoicer):
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Succeeded", {"Status": "Succeeded"})

    assert result.order_status == OrderStatus.PAID
    assert len(result.booked) == 2
    assert result.partial_failures == []

    order, items = await _state(session_factory, order_id)
    assert order.status == OrderStatus.PAID
    assert {i.status for i in items} == {ItemStatus.BOOKED}
    assert len({i.checkin_code for i in items}) == 2
    assert len({i.booking_id for i in items}) == 2

    assert len(invoicer.calls) == 1
    invoices = await _invoices(session_factory, order_id)
    assert [i.invoice_number for i in invoices] == ["INV-1"]

    confirmed = notifier.of_type("booking.confirmed")
    assert len(confirmed) == 1
    assert confirmed[0]["invoice_pdf"] == b"%PDF-1.4 test"
    assert "BEGIN:VCALENDAR" in confirmed[0]["calendar_ics"]
    assert confirmed[0]["calendar_ics"].count("BEGIN:VEVENT") == 2


@pytest.mark.asyncio
async def test_repeated_success_is_idempotent(session_factory, make_order, reconciler, notifier, invoicer):
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        await reconciler.apply_payment_state(db, ref, "Succeeded")
    _, before = await _state(session_factory, order_id)

    async with session_factory() as db:
        again = await reconciler.apply_payment_state(db, ref, "Succeeded")

    assert again.already_settled is True
    assert again.booked == []
    _, after = await _state(session_factory, order_id)
    assert [(i.booking_id, i.checkin_code) for i in after] == [(i.booking_id, i.checkin_code) for i in before]
    assert len(invoicer.calls) == 1
    assert len(notifier.of_type("booking.confirmed")) == 1


@pytest.mark.asyncio
async def test_overlapping_settlements_book_once(session_factory, make_order, reconciler, notifier):
    order_id, _ = await make_order(TWO_PENDING)

    async def settle():
        async with session_factory() as db:
            return await reconciler.confirm_bookings(db, order_id)

    results = await asyncio.gather(settle(), settle())

    assert sorted(len(r.booked) for r in results) == [0, 2]
    _, items = await _state(session_factory, order_id)
    assert {i.status for i in items} == {ItemStatus.BOOKED}
    assert len(notifier.of_type("booking.confirmed")) == 1


@pytest.mark.asyncio
async def test_paid_order_with_no_pending_items_is_already_settled(session_factory, make_order, reconciler):
    order_id, _ = await make_order(
        [("studio-a", TOMORROW, "10:00", ItemStatus.BOOKED)], status=OrderStatus.PAID, payment_status="Succeeded"
    )

    async with session_factory() as db:
        result = await reconciler.confirm_bookings(db, order_id)

    assert result.already_settled is True
    assert result.order_status == OrderStatus.PAID


@pytest.mark.asyncio
async def test_invoice_failure_still_confirms_without_pdf(session_factory, make_order, clock, studio, notifier):
    reconciler = SettlementReconciler(clock=clock, studio=studio, invoicer=FakeInvoicer(fail=True), notifier=notifier)
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Succeeded")

    order, items = await _state(session_factory, order_id)
    assert order.status == OrderStatus.PAID
    assert {i.status for i in items} == {ItemStatus.BOOKED}
    assert await _invoices(session_factory, order_id) == []

    confirmed = notifier.of_type("booking.confirmed")
    assert len(confirmed) == 1
    assert confirmed[0]["invoice_pdf"] is None
    assert [f.code for f in result.partial_failures] == ["RECONCILIATION_PARTIAL_FAILURE"]


@pytest.mark.asyncio
async def test_notification_failure_keeps_bookings(session_factory, make_order, reconciler, notifier):
    notifier.fail = True
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Succeeded")

    order, items = await _state(session_factory, order_id)
    assert order.status == OrderStatus.PAID
    assert {i.status for i in items} == {ItemStatus.BOOKED}
    assert len(result.partial_failures) == 1
    assert await _invoices(session_factory, order_id) != []


@pytest.mark.asyncio
async def test_settlement_without_collaborators(session_factory, make_order, clock, studio):
    reconciler = SettlementReconciler(clock=clock, studio=studio)
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Succeeded")

    assert len(result.booked) == 2
    assert result.partial_failures == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "state,expected",
    [("Failed", OrderStatus.FAILED), ("Canceled", OrderStatus.CANCELLED), ("Expired", OrderStatus.EXPIRED)],
)
async def test_failure_states_close_pending_order(session_factory, make_order, reconciler, state, expected):
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, state)

    assert result.order_status == expected
    order, items = await _state(session_factory, order_id)
    assert order.status == expected
    # items keep their status; the order status frees the slots
    assert {i.status for i in items} == {ItemStatus.PENDING}


@pytest.mark.asyncio
async def test_failure_report_for_fully_booked_order_is_ignored(session_factory, make_order, reconciler, notifier):
    order_id, ref = await make_order(
        [("studio-a", TOMORROW, "10:00", ItemStatus.BOOKED)], status=OrderStatus.PAID, payment_status="Succeeded"
    )

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Failed")

    order, _ = await _state(session_factory, order_id)
    assert order.status == OrderStatus.PAID
    assert result.already_settled is True
    assert notifier.of_type("booking.failed") == []


@pytest.mark.asyncio
async def test_failure_report_for_partly_booked_order_fails_it(session_factory, make_order, reconciler, notifier):
    order_id, ref = await make_order(
        [("studio-a", TOMORROW, "10:00", ItemStatus.BOOKED), ("studio-a", TOMORROW, "11:00", ItemStatus.PENDING)],
        status=OrderStatus.PAID,
    )

    async with session_factory() as db:
        await reconciler.apply_payment_state(db, ref, "Canceled")

    order, items = await _state(session_factory, order_id)
    assert order.status == OrderStatus.FAILED
    assert [i.status for i in items] == [ItemStatus.BOOKED, ItemStatus.PENDING]
    failed = notifier.of_type("booking.failed")
    assert len(failed) == 1
    assert failed[0]["reason"] == "payment Canceled"


@pytest.mark.asyncio
async def test_intermediate_state_only_updates_payment(session_factory, make_order, reconciler):
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Reserved", {"Status": "Reserved"})

    assert result.order_status == OrderStatus.PENDING
    async with session_factory() as db:
        res = await db.execute(select(Payment).where(Payment.provider_ref == ref))
        payment = res.scalar_one()
    assert payment.status == "Reserved"
    assert payment.payload_json == {"Status": "Reserved"}


@pytest.mark.asyncio
async def test_unknown_payment_is_not_found(db, reconciler):
    with pytest.raises(NotFound):
        await reconciler.apply_payment_state(db, "pay-unknown", "Succeeded")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.CANCELLED, OrderStatus.EXPIRED])
async def test_success_for_closed_order_books_nothing(session_factory, make_order, reconciler, notifier, status):
    order_id, ref = await make_order(TWO_PENDING, status=status)

    async with session_factory() as db:
        result = await reconciler.apply_payment_state(db, ref, "Succeeded")

    assert result.booked == []
    order, items = await _state(session_factory, order_id)
    assert order.status == status
    assert {i.status for i in items} == {ItemStatus.PENDING}
    assert notifier.events == []


@pytest.mark.asyncio
async def test_error_while_booking_fails_the_order(session_factory, make_order, clock, studio, notifier, monkeypatch):
    reconciler = SettlementReconciler(clock=clock, studio=studio, notifier=notifier)
    order_id, _ = await make_order(TWO_PENDING)

    async def broken(db, taken):
        raise RuntimeError("no free check-in code after 10 attempts")

    monkeypatch.setattr(reconciler, "_checkin_code", broken)

    async with session_factory() as db:
        with pytest.raises(RuntimeError):
            await reconciler.confirm_bookings(db, order_id)

    order, items = await _state(session_factory, order_id)
    assert order.status == OrderStatus.FAILED
    assert {i.status for i in items} == {ItemStatus.PENDING}
    assert len(notifier.of_type("booking.failed")) == 1


def test_reference_and_checkin_formats():
    ref = booking_reference(datetime(2025, 6, 9, 12, 30, tzinfo=timezone.utc))
    assert re.fullmatch(r"BK-1749472200000-[A-Z0-9]{9}", ref)
    assert not set("01IO") & set(CHECKIN_ALPHABET)


@pytest.mark.asyncio
async def test_checkin_codes_use_unambiguous_alphabet(session_factory, make_order, reconciler):
    order_id, ref = await make_order(TWO_PENDING)

    async with session_factory() as db:
        await reconciler.apply_payment_state(db, ref, "Succeeded")

    _, items = await _state(session_factory, order_id)
    for item in items:
        assert re.fullmatch(f"[{CHECKIN_ALPHABET}]{{6}}", item.checkin_code)
        assert item.booking_id.startswith("BK-")
