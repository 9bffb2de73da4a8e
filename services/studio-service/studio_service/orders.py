import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .cart import CONTENTION_REASONS, check_lines
from .clock import Clock
from .config import StudioConfig
from .db import lock_slots
from .errors import NotFound, SlotUnavailable, UpstreamPaymentError, ValidationFailed
from .models import Invoice, ItemStatus, Order, OrderItem, OrderStatus, Payment, SpecialEvent, SpecialEventBooking
from .notifications import Notifier, order_snapshot
from .payments import SUCCEEDED, BarionClient, PaymentLine
from .rbac import is_admin
from .reservations import release_slot_holds
from .schemas import CheckoutRequest, EventBooking
from .settlement import FAILURE_STATES, SettlementReconciler
from .slots import fmt_time

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "Hungary"

# provider states that always trigger settlement, even when the mirror already agrees
TERMINAL_STATES = {SUCCEEDED, *FAILURE_STATES}


def parse_billing_address(address: str | None) -> dict:
    """Split "Street, Zip City, Country" into billing columns."""
    out = {"billing_street": None, "billing_zip": None, "billing_city": None, "billing_country": None}
    if not address or not address.strip():
        return out

    parts = [p.strip() for p in address.split(",")]
    out["billing_street"] = parts[0] or None
    if len(parts) > 1 and parts[1]:
        zip_code, _, city = parts[1].partition(" ")
        out["billing_zip"] = zip_code or None
        out["billing_city"] = city.strip() or None
    out["billing_country"] = (parts[2] if len(parts) > 2 else "") or DEFAULT_COUNTRY
    return out


def _line_label(line) -> str:
    return f"{line.room_id} {line.date.isoformat()} {fmt_time(line.start_time)}"


def check_owner(order: Order, user: dict | None):
    """Orders placed by a signed-in user are only visible to that user and admins."""
    if not order.user_id:
        return
    if user is None:
        raise NotFound("Order not found", {"order_id": order.id})
    if str(user.get("sub")) != order.user_id and not is_admin(user):
        raise NotFound("Order not found", {"order_id": order.id})


async def create_order(
    db: AsyncSession,
    data: CheckoutRequest,
    *,
    clock: Clock,
    studio: StudioConfig,
    provider: BarionClient,
    notifier: Notifier | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
) -> dict:
    """
    Create a pending order and start its payment, all or nothing.

    Slots are re-checked here under lock, prices come from configuration and
    nothing is committed until the provider has handed back a payment id.
    """
    if not data.terms_accepted or not data.privacy_accepted:
        raise ValidationFailed("Terms and privacy policy must be accepted")

    keys = [(line.room_id, line.date, line.start_time) for line in data.items]
    if len(set(keys)) != len(keys):
        raise ValidationFailed("Cart contains the same slot more than once")

    await lock_slots(db, keys)

    verdicts = await check_lines(db, data.items, clock=clock, studio=studio, session_id=session_id)
    lost = [v for v in verdicts if v.reason in CONTENTION_REASONS]
    if lost:
        await db.rollback()
        raise SlotUnavailable(
            "Some slots are no longer available",
            {"items": [{"index": v.index, "slot": _line_label(v.line), "reason": v.reason} for v in lost]},
        )
    invalid = [v for v in verdicts if not v.valid]
    if invalid:
        await db.rollback()
        raise ValidationFailed(
            "Cart is not valid",
            {"items": [{"index": v.index, "slot": _line_label(v.line), "reason": v.reason} for v in invalid]},
        )

    now = clock.utcnow()
    total = sum(v.unit_price for v in verdicts)
    invoice = data.invoice
    order = Order(
        id=str(uuid.uuid4()),
        user_id=user_id,
        status=OrderStatus.PENDING,
        language=data.language,
        customer_name=data.customer.name,
        email=data.customer.email,
        phone=data.customer.phone,
        total_amount=total,
        currency=studio.currency,
        invoice_required=bool(invoice and invoice.required),
        invoice_company=invoice.company if invoice else None,
        invoice_tax_number=invoice.tax_number if invoice else None,
        invoice_address=invoice.address if invoice else None,
        terms_accepted=data.terms_accepted,
        privacy_accepted=data.privacy_accepted,
        created_at=now,
        updated_at=now,
        **parse_billing_address(invoice.address if invoice else None),
    )
    db.add(order)
    await db.flush()

    items = []
    payment_lines = []
    for v in verdicts:
        line = v.line
        item = OrderItem(
            id=str(uuid.uuid4()),
            order_id=order.id,
            room_id=line.room_id,
            booking_date=line.date,
            start_time=line.start_time,
            end_time=line.end_time,
            unit_price=v.unit_price,
            status=ItemStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        items.append(item)
        db.add(item)

        room = studio.studio(line.room_id)
        name = line.room_name or (room.name if room else line.room_id)
        description = "Photo studio booking"
        if isinstance(line, EventBooking):
            event = await db.get(SpecialEvent, v.special_event_id)
            name = f"{name} - {event.name}"
            description = "Special event booking"
        payment_lines.append(
            PaymentLine(
                name=f"{name} - {line.date.isoformat()} {fmt_time(line.start_time)}-{fmt_time(line.end_time)}",
                description=description,
                unit_price=v.unit_price,
            )
        )

    await db.flush()
    for item, v in zip(items, verdicts):
        if v.special_event_id:
            db.add(SpecialEventBooking(special_event_id=v.special_event_id, order_item_id=item.id))
    await release_slot_holds(db, keys)
    await db.flush()

    try:
        started = await provider.start_payment(
            order.id,
            payment_lines,
            total,
            studio.currency,
            "hu-HU" if data.language == "hu" else "en-US",
            payer_email=data.customer.email,
        )
    except UpstreamPaymentError:
        await db.rollback()
        logger.warning("payment start failed, order discarded")
        raise

    db.add(
        Payment(
            order_id=order.id,
            provider=provider.provider,
            provider_ref=started.payment_id,
            status="pending",
            payload_json=started.raw,
            created_at=now,
            updated_at=now,
        )
    )
    await db.commit()
    logger.info("order %s created with %d item(s), total %s %s", order.id, len(items), total, studio.currency)

    if notifier is not None:
        try:
            await notifier.order_created(order_snapshot(order, items))
        except Exception as e:
            logger.warning("order.created event for %s not published: %s", order.id, e)

    return {
        "order_id": order.id,
        "payment_id": started.payment_id,
        "redirect_url": started.redirect_url,
        "total": total,
        "currency": studio.currency,
    }


async def cancel_order(db: AsyncSession, order_id: str, *, clock: Clock, notifier: Notifier | None = None) -> str:
    """Cancel an order and every one of its items in one transaction."""
    res = await db.execute(
        select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
    )
    order = res.scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found", {"order_id": order_id})

    if order.status == OrderStatus.CANCELLED:
        await db.commit()
        return order.status
    if order.status not in (OrderStatus.PENDING, OrderStatus.PAID):
        status = order.status
        await db.commit()
        raise ValidationFailed(f"Cannot cancel a {status} order", {"order_id": order_id})

    now = clock.utcnow()
    order.status = OrderStatus.CANCELLED
    order.updated_at = now
    await db.execute(
        update(OrderItem)
        .where(OrderItem.order_id == order_id)
        .values(status=ItemStatus.CANCELLED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("order %s cancelled", order_id)

    if notifier is not None:
        try:
            items = await _load_items(db, order_id)
            await notifier.booking_cancelled(order_snapshot(order, items))
        except Exception as e:
            logger.warning("booking.cancelled event for %s not published: %s", order_id, e)
    return order.status


async def _load_items(db: AsyncSession, order_id: str) -> list[OrderItem]:
    res = await db.execute(
        select(OrderItem)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.booking_date, OrderItem.start_time)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def _payment_for(db: AsyncSession, order_id: str) -> Payment | None:
    res = await db.execute(
        select(Payment).where(Payment.order_id == order_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def get_order_status(
    db: AsyncSession,
    order_id: str,
    *,
    provider: BarionClient,
    reconciler: SettlementReconciler,
    user: dict | None = None,
) -> dict:
    """
    Read an order, catching up with the payment provider on the way.

    The callback may not have arrived by the time the customer is sent back
    from the payment page, so a pending order asks the provider itself and, on
    success, settles inline. A paid order that still has pending items is
    settled too.
    """
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", {"order_id": order_id})
    check_owner(order, user)

    payment = await _payment_for(db, order_id)

    if payment is not None and order.status == OrderStatus.PENDING:
        try:
            state = await provider.get_payment_state(payment.provider_ref)
        except UpstreamPaymentError as e:
            logger.warning("status refresh for order %s skipped: %s", order_id, e.message)
        else:
            if state.status != payment.status or state.status in TERMINAL_STATES:
                try:
                    await reconciler.apply_payment_state(db, payment.provider_ref, state.status, state.raw)
                except Exception:
                    logger.exception("fallback settlement failed for order %s", order_id)

    elif payment is not None and order.status == OrderStatus.PAID and payment.status == SUCCEEDED:
        res = await db.execute(
            select(func.count(OrderItem.id)).where(
                OrderItem.order_id == order_id, OrderItem.status == ItemStatus.PENDING
            )
        )
        if res.scalar_one() > 0:
            try:
                await reconciler.confirm_bookings(db, order_id)
            except Exception:
                logger.exception("fallback settlement failed for order %s", order_id)

    res = await db.execute(select(Order).where(Order.id == order_id).execution_options(populate_existing=True))
    order = res.scalar_one()
    payment = await _payment_for(db, order_id)
    snapshot = await reconciler.snapshot(db, order)

    return {
        "order_id": order.id,
        "status": order.status,
        "total": order.total_amount,
        "currency": order.currency,
        "payment_status": payment.status if payment else None,
        "items": [
            {
                "id": i["id"],
                "room_id": i["room_id"],
                "date": i["date"],
                "start_time": i["start_time"],
                "end_time": i["end_time"],
                "unit_price": i["unit_price"],
                "status": i["status"],
                "booking_id": i["booking_id"],
                "checkin_code": i["checkin_code"],
                "special_event_id": i["special_event_id"],
            }
            for i in snapshot["items"]
        ],
    }


async def expire_stale_orders(db: AsyncSession, older_than: datetime, *, now: datetime) -> int:
    """Move pending orders created before `older_than` to expired; frees their slots."""
    res = await db.execute(
        update(Order)
        .where(Order.status == OrderStatus.PENDING, Order.created_at < older_than)
        .values(status=OrderStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = res.rowcount or 0
    if count:
        logger.info("expired %d stale pending order(s)", count)
    return count


async def get_order_invoice(db: AsyncSession, order_id: str, *, user: dict | None = None) -> Invoice:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", {"order_id": order_id})
    check_owner(order, user)

    res = await db.execute(
        select(Invoice).where(Invoice.order_id == order_id).order_by(Invoice.created_at.desc()).limit(1)
    )
    invoice = res.scalar_one_or_none()
    if invoice is None:
        raise NotFound("Invoice not found", {"order_id": order_id})
    return invoice


async def get_invoice_pdf(db: AsyncSession, invoice_id: str, *, user: dict | None = None) -> Invoice:
    invoice = await db.get(Invoice, invoice_id)
    if invoice is None or not invoice.pdf_data:
        raise NotFound("Invoice not found", {"invoice_id": invoice_id})
    order = await db.get(Order, invoice.order_id)
    check_owner(order, user)
    return invoice
