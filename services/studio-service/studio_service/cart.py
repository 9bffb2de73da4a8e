"""
Cart validation: the last check before money moves.

Every line gets its own verdict so the client can point at exactly which
slot went stale; one bad line never stops evaluation of the rest. Checkout
runs the same rules again inside its own transaction, so a valid verdict here
is advisory only.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from .availability import is_past, is_slot_available, times_overlap
from .clock import Clock
from .config import StudioConfig
from .models import SpecialEvent
from .schemas import EventBooking, NormalBooking
from .slots import Slot, duration_slots, hourly_slots

STUDIO_NOT_FOUND = "studio_not_found"
SLOT_NOT_OFFERED = "slot_not_offered"
SLOT_IN_PAST = "slot_in_past"
SLOT_UNAVAILABLE = "slot_unavailable"
DUPLICATE_SLOT = "duplicate_slot"
INVALID_PRICE = "invalid_price"
EVENT_NOT_FOUND = "event_not_found"
EVENT_NOT_ACTIVE = "event_not_active"
DATE_OUTSIDE_EVENT = "date_outside_event"

# reasons that mean "somebody else got there first" rather than a bad request
CONTENTION_REASONS = {SLOT_UNAVAILABLE}


@dataclass
class LineVerdict:
    index: int
    line: NormalBooking | EventBooking
    reason: str | None = None
    unit_price: int | None = None
    special_event_id: str | None = None

    @property
    def valid(self) -> bool:
        return self.reason is None


async def _check_normal(db, line: NormalBooking, verdict: LineVerdict, *, clock, studio, session_id):
    room = studio.studio(line.room_id)
    if room is None or not room.active:
        verdict.reason = STUDIO_NOT_FOUND
        return

    wanted = Slot(line.room_id, line.date, line.start_time, line.end_time)
    if wanted not in hourly_slots(line.room_id, line.date, studio.opening_hours):
        verdict.reason = SLOT_NOT_OFFERED
        return

    if is_past(line.date, line.start_time, clock.now()):
        verdict.reason = SLOT_IN_PAST
        return

    if not await is_slot_available(
        db, line.room_id, line.date, line.start_time, clock=clock, end=line.end_time, exclude_session=session_id
    ):
        verdict.reason = SLOT_UNAVAILABLE
        return

    if line.price != studio.hourly_rate:
        verdict.reason = INVALID_PRICE
        return

    verdict.unit_price = studio.hourly_rate


async def _check_event(db, line: EventBooking, verdict: LineVerdict, *, clock, session_id):
    event = await db.get(SpecialEvent, line.special_event_id)
    if event is None:
        verdict.reason = EVENT_NOT_FOUND
        return
    if not event.active:
        verdict.reason = EVENT_NOT_ACTIVE
        return
    if line.date < event.start_date or line.date > event.end_date:
        verdict.reason = DATE_OUTSIDE_EVENT
        return

    wanted = Slot(line.room_id, line.date, line.start_time, line.end_time)
    offered = duration_slots(event.room_id, line.date, event.start_time, event.end_time, event.slot_duration_minutes)
    if wanted not in offered:
        verdict.reason = SLOT_NOT_OFFERED
        return

    if is_past(line.date, line.start_time, clock.now()):
        verdict.reason = SLOT_IN_PAST
        return

    if not await is_slot_available(
        db,
        line.room_id,
        line.date,
        line.start_time,
        clock=clock,
        end=line.end_time,
        exclude_session=session_id,
        for_event=event.id,
    ):
        verdict.reason = SLOT_UNAVAILABLE
        return

    if line.price != event.price_per_slot:
        verdict.reason = INVALID_PRICE
        return

    verdict.unit_price = event.price_per_slot
    verdict.special_event_id = event.id


async def validate_line(
    db: AsyncSession,
    index: int,
    line: NormalBooking | EventBooking,
    *,
    clock: Clock,
    studio: StudioConfig,
    session_id: str | None = None,
) -> LineVerdict:
    verdict = LineVerdict(index=index, line=line)
    if isinstance(line, EventBooking):
        await _check_event(db, line, verdict, clock=clock, session_id=session_id)
    else:
        await _check_normal(db, line, verdict, clock=clock, studio=studio, session_id=session_id)
    return verdict


async def check_lines(
    db: AsyncSession,
    lines,
    *,
    clock: Clock,
    studio: StudioConfig,
    session_id: str | None = None,
) -> list[LineVerdict]:
    verdicts = []
    # earlier lines per (room, date); a line overlapping one of them is a repeat
    seen: dict[tuple, list] = {}
    for index, line in enumerate(lines):
        earlier = seen.setdefault((line.room_id, line.date), [])
        if any(times_overlap(line.start_time, line.end_time, s, e) for s, e in earlier):
            verdicts.append(LineVerdict(index=index, line=line, reason=DUPLICATE_SLOT))
            continue
        earlier.append((line.start_time, line.end_time))
        verdicts.append(await validate_line(db, index, line, clock=clock, studio=studio, session_id=session_id))
    return verdicts


async def validate_cart(
    db: AsyncSession,
    lines,
    *,
    clock: Clock,
    studio: StudioConfig,
    session_id: str | None = None,
) -> dict:
    verdicts = await check_lines(db, lines, clock=clock, studio=studio, session_id=session_id)
    return {
        "valid": all(v.valid for v in verdicts),
        "items": [
            {"index": v.index, "item": v.line, "valid": v.valid, "reason": v.reason}
            for v in verdicts
        ],
        # asserted prices, as submitted
        "total": sum(line.price for line in lines),
        "currency": studio.currency,
    }
