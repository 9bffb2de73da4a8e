"""
Settlement: turning a paid order's pending items into bookings.

Both the provider callback and the client's status poll end up here, possibly
at the same time and possibly more than once. There is no "already processed"
flag. Whether there is work left is read from the rows themselves: a paid
order with no pending items is settled. The order row and its pending items
are locked FOR UPDATE and every item flip is conditional on the item still
being pending, so two overlapping runs can never both book the same item.
"""

import logging
import secrets
import string
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import StudioConfig
from .errors import NotFound, ReconciliationPartialFailure
from .ical import build_calendar
from .invoicing import InvoiceClient, save_invoice
from .models import ItemStatus, Order, OrderItem, OrderStatus, Payment, SpecialEventBooking, can_transition
from .notifications import Notifier, order_snapshot
from .payments import CANCELED, EXPIRED, FAILED, SUCCEEDED

logger = logging.getLogger(__name__)

CHECKIN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CHECKIN_LENGTH = 6
CHECKIN_MAX_ATTEMPTS = 10

# provider state -> terminal order status
FAILURE_STATES = {
    FAILED: OrderStatus.FAILED,
    CANCELED: OrderStatus.CANCELLED,
    EXPIRED: OrderStatus.EXPIRED,
}


@dataclass
class SettlementResult:
    order_id: str
    order_status: str
    booked: list[str] = field(default_factory=list)
    already_settled: bool = False
    partial_failures: list[ReconciliationPartialFailure] = field(default_factory=list)


def booking_reference(now) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"BK-{int(now.timestamp() * 1000)}-{suffix}"


class SettlementReconciler:
    def __init__(
        self,
        *,
        clock,
        studio: StudioConfig,
        invoicer: InvoiceClient | None = None,
        notifier: Notifier | None = None,
    ):
        self.clock = clock
        self.studio = studio
        self.invoicer = invoicer
        self.notifier = notifier

    async def _lock_order(self, db: AsyncSession, order_id: str) -> Order:
        res = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = res.scalar_one_or_none()
        if order is None:
            raise NotFound("Order not found", {"order_id": order_id})
        return order

    async def _items(self, db: AsyncSession, order_id: str, *, status: str | None = None, lock: bool = False):
        stmt = (
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.booking_date, OrderItem.start_time)
            .execution_options(populate_existing=True)
        )
        if status is not None:
            stmt = stmt.where(OrderItem.status == status)
        if lock:
            stmt = stmt.with_for_update()
        res = await db.execute(stmt)
        return list(res.scalars().all())

    async def _checkin_code(self, db: AsyncSession, taken: set[str]) -> str:
        for _ in range(CHECKIN_MAX_ATTEMPTS):
            code = "".join(secrets.choice(CHECKIN_ALPHABET) for _ in range(CHECKIN_LENGTH))
            if code in taken:
                continue
            res = await db.execute(select(OrderItem.id).where(OrderItem.checkin_code == code).limit(1))
            if res.first() is None:
                taken.add(code)
                return code
        raise RuntimeError(f"no free check-in code after {CHECKIN_MAX_ATTEMPTS} attempts")

    async def snapshot(self, db: AsyncSession, order: Order) -> dict:
        items = await self._items(db, order.id)
        res = await db.execute(
            select(SpecialEventBooking.order_item_id, SpecialEventBooking.special_event_id).where(
                SpecialEventBooking.order_item_id.in_([i.id for i in items])
            )
        )
        links = {row.order_item_id: row.special_event_id for row in res}
        room_names = {s.id: s.name for s in self.studio.studios}
        return order_snapshot(order, items, room_names=room_names, event_links=links)

    async def apply_payment_state(self, db: AsyncSession, provider_ref: str, state: str, raw: dict | None = None):
        """
        Record a provider-reported state and act on it.

        Unknown or intermediate states only update the payment mirror.
        """
        res = await db.execute(select(Payment).where(Payment.provider_ref == provider_ref))
        payment = res.scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found", {"payment_id": provider_ref})

        if payment.status != state or raw is not None:
            payment.status = state
            if raw is not None:
                payment.payload_json = raw
            payment.updated_at = self.clock.utcnow()
            await db.commit()

        if state == SUCCEEDED:
            return await self.confirm_bookings(db, payment.order_id)
        if state in FAILURE_STATES:
            return await self.fail_order(db, payment.order_id, FAILURE_STATES[state], reason=f"payment {state}")

        order = await db.get(Order, payment.order_id)
        logger.info("payment %s is %s, order %s left %s", provider_ref, state, order.id, order.status)
        return SettlementResult(order_id=order.id, order_status=order.status)

    async def confirm_bookings(self, db: AsyncSession, order_id: str) -> SettlementResult:
        order = await self._lock_order(db, order_id)

        if order.status not in (OrderStatus.PENDING, OrderStatus.PAID):
            # money moved for an order that is already closed; its slots may be resold
            logger.error("payment succeeded for %s order %s, needs manual refund", order.status, order.id)
            await db.commit()
            return SettlementResult(order_id=order.id, order_status=order.status)

        pending = await self._items(db, order_id, status=ItemStatus.PENDING, lock=True)

        if not pending:
            if order.status != OrderStatus.PAID:
                order.status = OrderStatus.PAID
                order.updated_at = self.clock.utcnow()
            await db.commit()
            logger.info("order %s already settled", order_id)
            return SettlementResult(order_id=order_id, order_status=order.status, already_settled=True)

        booked = []
        try:
            now = self.clock.utcnow()
            taken: set[str] = set()
            for item in pending:
                res = await db.execute(
                    update(OrderItem)
                    .where(OrderItem.id == item.id, OrderItem.status == ItemStatus.PENDING)
                    .values(
                        status=ItemStatus.BOOKED,
                        booking_id=booking_reference(now),
                        checkin_code=await self._checkin_code(db, taken),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    booked.append(item.id)

            order.status = OrderStatus.PAID
            order.updated_at = now
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("booking creation failed for order %s", order_id)
            await self._mark_failed_after_error(db, order_id)
            raise

        logger.info("order %s paid, booked %d item(s)", order_id, len(booked))
        result = SettlementResult(order_id=order_id, order_status=OrderStatus.PAID, booked=booked)
        if booked:
            await self._after_booking(db, order, result)
        return result

    async def _after_booking(self, db: AsyncSession, order: Order, result: SettlementResult):
        snapshot = await self.snapshot(db, order)

        invoice_pdf = None
        if self.invoicer is not None:
            try:
                issued = await self.invoicer.create_invoice(snapshot)
                await save_invoice(db, snapshot, issued, now=self.clock.utcnow())
                invoice_pdf = issued.pdf
            except Exception as e:
                await db.rollback()
                self._partial(result, "Invoice generation failed", e)

        if self.notifier is not None:
            try:
                calendar_ics = build_calendar(snapshot, clock=self.clock)
                await self.notifier.booking_confirmed(snapshot, calendar_ics, invoice_pdf)
            except Exception as e:
                self._partial(result, "Confirmation notification failed", e)

    def _partial(self, result: SettlementResult, message: str, exc: Exception):
        err = ReconciliationPartialFailure(message, {"order_id": result.order_id, "cause": str(exc)})
        result.partial_failures.append(err)
        logger.warning("%s: %s for order %s: %s", err.code, message, result.order_id, exc)

    async def _mark_failed_after_error(self, db: AsyncSession, order_id: str):
        try:
            order = await self._lock_order(db, order_id)
            if can_transition(order.status, OrderStatus.FAILED):
                order.status = OrderStatus.FAILED
                order.updated_at = self.clock.utcnow()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("could not mark order %s failed", order_id)
            return
        await self._notify_failure(db, order, "booking creation failed")

    async def fail_order(self, db: AsyncSession, order_id: str, target: str, *, reason: str) -> SettlementResult:
        """
        Apply a failed/cancelled/expired payment report.

        A paid order whose items are all booked stays paid. A paid order that was
        only partly booked becomes failed and the customer is told. Items are
        left alone either way.
        """
        order = await self._lock_order(db, order_id)

        if order.status == OrderStatus.PAID:
            items = await self._items(db, order_id, lock=True)
            statuses = {i.status for i in items}
            if ItemStatus.PENDING not in statuses:
                await db.commit()
                logger.warning("ignoring %s report for settled order %s", target, order_id)
                return SettlementResult(order_id=order_id, order_status=order.status, already_settled=True)

            partial = ItemStatus.BOOKED in statuses
            order.status = OrderStatus.FAILED if partial or target == OrderStatus.EXPIRED else target
            order.updated_at = self.clock.utcnow()
            await db.commit()
            logger.info("paid order %s moved to %s (%s)", order_id, order.status, reason)
            if partial:
                await self._notify_failure(db, order, reason)
            return SettlementResult(order_id=order_id, order_status=order.status)

        if not can_transition(order.status, target):
            await db.commit()
            logger.info("order %s is %s, %s report ignored", order_id, order.status, target)
            return SettlementResult(order_id=order_id, order_status=order.status)

        order.status = target
        order.updated_at = self.clock.utcnow()
        await db.commit()
        logger.info("order %s -> %s (%s)", order_id, target, reason)
        return SettlementResult(order_id=order_id, order_status=order.status)

    async def _notify_failure(self, db: AsyncSession, order: Order, reason: str):
        if self.notifier is None:
            return
        try:
            await self.notifier.booking_failed(await self.snapshot(db, order), reason)
        except Exception as e:
            logger.warning("%s: failure notification for order %s: %s", ReconciliationPartialFailure.code, order.id, e)
