import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock
from .config import StudioConfig
from .models import (
    OCCUPYING_ITEM_STATUSES,
    OCCUPYING_ORDER_STATUSES,
    Order,
    OrderItem,
    SpecialEvent,
    TempReservation,
)
from .slots import Slot, duration_slots, fmt_time, hourly_slots

logger = logging.getLogger(__name__)

AVAILABLE = "available"
BOOKED = "booked"
UNAVAILABLE = "unavailable"

# holds are only taken on hourly slots
HOLD_LENGTH = timedelta(hours=1)
MIDNIGHT = time(0)
DAY_MINUTES = 24 * 60


def is_past(day: date, start: time, now: datetime) -> bool:
    """A slot starting in the current hour already counts as passed."""
    today = now.date()
    if day < today:
        return True
    return day == today and start.hour <= now.hour


def hold_end(day: date, start: time) -> time:
    return (datetime.combine(day, start) + HOLD_LENGTH).time()


def _minutes(t: time, *, is_end: bool = False) -> int:
    # an end of 00:00 is the end of the day
    if is_end and t == MIDNIGHT:
        return DAY_MINUTES
    return t.hour * 60 + t.minute


def _span(start: time, end: time) -> tuple[int, int]:
    return _minutes(start), _minutes(end, is_end=True)


def _overlaps(a: tuple[int, int], b: tuple[int, int]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def times_overlap(start: time, end: time, other_start: time, other_end: time) -> bool:
    return _overlaps(_span(start, end), _span(other_start, other_end))


def overlapping(start_col, end_col, start: time, end: time):
    """Rows whose [start_col, end_col) meets [start, end)."""
    clauses = [or_(end_col > start, end_col == MIDNIGHT)]
    if end != MIDNIGHT:
        clauses.append(start_col < end)
    return and_(*clauses)


def hold_overlapping(day: date, start: time, end: time):
    """Holds on `day` whose hour meets [start, end)."""
    clauses = []
    if end != MIDNIGHT:
        clauses.append(TempReservation.start_time < end)
    earliest = datetime.combine(day, start) - HOLD_LENGTH
    if earliest.date() == day:
        clauses.append(TempReservation.start_time > earliest.time())
    return and_(TempReservation.date == day, *clauses)


def occupying_items_query():
    """OrderItems that still hold their slot: pending/booked items on pending/paid orders."""
    return (
        select(OrderItem.room_id, OrderItem.start_time, OrderItem.end_time)
        .join(Order, Order.id == OrderItem.order_id)
        .where(
            OrderItem.status.in_(OCCUPYING_ITEM_STATUSES),
            Order.status.in_(OCCUPYING_ORDER_STATUSES),
        )
    )


def occupying_item_exists(room_id, day, start, end):
    """Whether an occupying order item on (room, day) overlaps [start, end)."""
    return (
        select(OrderItem.id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(
            OrderItem.room_id == room_id,
            OrderItem.booking_date == day,
            overlapping(OrderItem.start_time, OrderItem.end_time, start, end),
            OrderItem.status.in_(OCCUPYING_ITEM_STATUSES),
            Order.status.in_(OCCUPYING_ORDER_STATUSES),
        )
        .exists()
    )


def _blocked_hours(event: SpecialEvent) -> range:
    return range(event.start_time.hour, event.end_time.hour)


def _is_missing_table(exc: DBAPIError) -> bool:
    msg = str(exc.orig).lower()
    return "no such table" in msg or "does not exist" in msg or "undefinedtable" in msg


async def occupied_spans(db: AsyncSession, day: date, now_utc: datetime) -> dict[str, list[tuple[int, int]]]:
    """Per room, the minute spans on `day` taken by an order item or an unexpired hold."""
    taken: dict[str, list[tuple[int, int]]] = {}

    res = await db.execute(occupying_items_query().where(OrderItem.booking_date == day))
    for row in res:
        taken.setdefault(row.room_id, []).append(_span(row.start_time, row.end_time))

    res = await db.execute(
        select(TempReservation.room_id, TempReservation.start_time).where(
            TempReservation.date == day,
            TempReservation.expires_at > now_utc,
        )
    )
    for row in res:
        taken.setdefault(row.room_id, []).append(_span(row.start_time, hold_end(day, row.start_time)))
    return taken


def _is_taken(spans: list[tuple[int, int]], slot: Slot) -> bool:
    wanted = _span(slot.start, slot.end)
    return any(_overlaps(wanted, span) for span in spans)


async def active_events_on(db: AsyncSession, day: date, room_id: str | None = None) -> list[SpecialEvent]:
    stmt = select(SpecialEvent).where(
        SpecialEvent.active.is_(True),
        SpecialEvent.start_date <= day,
        SpecialEvent.end_date >= day,
    )
    if room_id is not None:
        stmt = stmt.where(SpecialEvent.room_id == room_id)
    res = await db.execute(stmt)
    return list(res.scalars().all())


def _slot_out(slot: Slot, status: str) -> dict:
    return {"time": fmt_time(slot.start), "end_time": fmt_time(slot.end), "status": status}


async def get_availability(db: AsyncSession, day: date, *, clock: Clock, studio: StudioConfig) -> dict:
    """
    Slot statuses for every active room on `day`.

    If the tables are not there yet (first deploy, migrations pending) every
    future slot is reported available instead of failing the request.
    """
    now = clock.now()
    taken: dict[str, list[tuple[int, int]]] = {}
    blocked: set[tuple[str, int]] = set()

    try:
        taken = await occupied_spans(db, day, clock.utcnow())
        for event in await active_events_on(db, day):
            blocked.update((event.room_id, h) for h in _blocked_hours(event))
    except DBAPIError as e:
        if not _is_missing_table(e):
            raise
        await db.rollback()
        logger.warning("booking tables not ready, reporting all slots available: %s", e.orig)
        taken, blocked = {}, set()

    rooms = []
    for room in studio.active_studios:
        slots = []
        for slot in hourly_slots(room.id, day, studio.opening_hours):
            if is_past(day, slot.start, now):
                status = UNAVAILABLE
            elif _is_taken(taken.get(room.id, []), slot) or (room.id, slot.start.hour) in blocked:
                status = BOOKED
            else:
                status = AVAILABLE
            slots.append(_slot_out(slot, status))
        rooms.append({"id": room.id, "name": room.name, "slots": slots})

    return {"date": day.isoformat(), "rooms": rooms}


async def is_slot_available(
    db: AsyncSession,
    room_id: str,
    day: date,
    start: time,
    *,
    clock: Clock,
    end: time | None = None,
    exclude_session: str | None = None,
    for_event: str | None = None,
) -> bool:
    """
    Whether nobody else occupies any part of [start, end) in the room on `day`.

    `end` defaults to one hour after `start`. Holds of `exclude_session` do
    not count against it. Hourly slots covered by an active special event are
    blocked, except for bookings of that event itself (`for_event`).
    """
    if end is None:
        end = hold_end(day, start)

    res = await db.execute(select(occupying_item_exists(room_id, day, start, end)))
    if res.scalar():
        return False

    hold_q = select(TempReservation.id).where(
        TempReservation.room_id == room_id,
        hold_overlapping(day, start, end),
        TempReservation.expires_at > clock.utcnow(),
    )
    if exclude_session:
        hold_q = hold_q.where(TempReservation.session_id != exclude_session)
    res = await db.execute(hold_q.limit(1))
    if res.first() is not None:
        return False

    for event in await active_events_on(db, day, room_id):
        if event.id == for_event:
            continue
        if start.hour in _blocked_hours(event):
            return False

    return True


async def get_event_availability(db: AsyncSession, event: SpecialEvent, day: date, *, clock: Clock) -> list[dict]:
    """Slots of a special event on `day`; empty when `day` is outside the event's range."""
    if day < event.start_date or day > event.end_date:
        return []

    now = clock.now()
    taken = (await occupied_spans(db, day, clock.utcnow())).get(event.room_id, [])

    out = []
    for slot in duration_slots(event.room_id, day, event.start_time, event.end_time, event.slot_duration_minutes):
        if is_past(day, slot.start, now):
            status = UNAVAILABLE
        elif _is_taken(taken, slot):
            status = BOOKED
        else:
            status = AVAILABLE
        out.append(_slot_out(slot, status))
    return out


def slot_filter(model, room_id: str, day: date, start: time):
    """WHERE clause matching one (room, date, start) on a hold or order item model."""
    date_col = model.date if model is TempReservation else model.booking_date
    return and_(model.room_id == room_id, date_col == day, model.start_time == start)
