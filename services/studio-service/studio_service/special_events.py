import logging
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import StudioConfig
from .errors import NotFound, ValidationFailed
from .models import ItemStatus, OrderItem, SpecialEvent, SpecialEventBooking
from .schemas import ById, BySlug, SpecialEventIn, SpecialEventOut, SpecialEventUpdate

logger = logging.getLogger(__name__)

# fields that decide which slots exist
GRID_FIELDS = ("start_date", "end_date", "start_time", "end_time", "slot_duration_minutes")


async def find_event(db: AsyncSession, ref: ById | BySlug) -> SpecialEvent | None:
    if isinstance(ref, ById):
        return await db.get(SpecialEvent, ref.value)
    res = await db.execute(select(SpecialEvent).where(SpecialEvent.slug == ref.value))
    return res.scalar_one_or_none()


async def get_active_event(db: AsyncSession, ref: ById | BySlug) -> SpecialEvent:
    event = await find_event(db, ref)
    if event is None or not event.active:
        raise NotFound("Special event not found or not active", {"ref": ref.value})
    return event


def event_out(event: SpecialEvent, total_bookings: int | None = None) -> SpecialEventOut:
    return SpecialEventOut(
        id=event.id,
        slug=event.slug,
        name=event.name,
        description=event.description,
        room_id=event.room_id,
        start_date=event.start_date,
        end_date=event.end_date,
        start_time=event.start_time,
        end_time=event.end_time,
        slot_duration_minutes=event.slot_duration_minutes,
        price_per_slot=event.price_per_slot,
        active=event.active,
        total_bookings=total_bookings,
    )


async def list_events(db: AsyncSession, *, active_only: bool = False, today: date | None = None) -> list[SpecialEventOut]:
    booked = (
        select(func.count(SpecialEventBooking.id))
        .join(OrderItem, OrderItem.id == SpecialEventBooking.order_item_id)
        .where(
            SpecialEventBooking.special_event_id == SpecialEvent.id,
            OrderItem.status == ItemStatus.BOOKED,
        )
        .correlate(SpecialEvent)
        .scalar_subquery()
    )
    stmt = select(SpecialEvent, booked.label("total_bookings"))
    if active_only:
        stmt = stmt.where(SpecialEvent.active.is_(True))
        if today is not None:
            stmt = stmt.where(SpecialEvent.end_date >= today)
    stmt = stmt.order_by(SpecialEvent.start_date.desc(), SpecialEvent.start_time)

    res = await db.execute(stmt)
    return [event_out(event, total) for event, total in res.all()]


def _check_room(studio: StudioConfig, room_id: str):
    room = studio.studio(room_id)
    if room is None:
        raise ValidationFailed("Unknown studio", {"room_id": room_id})


async def create_event(db: AsyncSession, data: SpecialEventIn, *, studio: StudioConfig) -> SpecialEvent:
    _check_room(studio, data.room_id)

    event = SpecialEvent(**data.model_dump())
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailed("Slug already in use", {"slug": data.slug})

    logger.info("special event %s created for %s", event.id, event.room_id)
    return event


async def _booking_count(db: AsyncSession, event_id: str) -> int:
    res = await db.execute(
        select(func.count(SpecialEventBooking.id)).where(SpecialEventBooking.special_event_id == event_id)
    )
    return res.scalar_one()


async def update_event(db: AsyncSession, event_id: str, data: SpecialEventUpdate) -> SpecialEvent:
    """
    Apply a partial update. Once the event has bookings its slot grid is
    frozen; the other fields stay editable.
    """
    event = await db.get(SpecialEvent, event_id)
    if event is None:
        raise NotFound("Special event not found", {"id": event_id})

    changes = data.model_dump(exclude_unset=True)
    regrid = sorted(f for f in GRID_FIELDS if f in changes and changes[f] != getattr(event, f))
    if regrid and await _booking_count(db, event_id) > 0:
        raise ValidationFailed(
            "Cannot change the slot grid of a special event with existing bookings", {"fields": regrid}
        )

    for field, value in changes.items():
        setattr(event, field, value)

    if event.end_date < event.start_date or event.end_time <= event.start_time:
        await db.rollback()
        raise ValidationFailed("Invalid date or time range", {"id": event_id})

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailed("Slug already in use", {"slug": data.slug})
    return event


async def delete_event(db: AsyncSession, event_id: str):
    """Events that were ever booked can only be deactivated."""
    event = await db.get(SpecialEvent, event_id)
    if event is None:
        raise NotFound("Special event not found", {"id": event_id})

    if await _booking_count(db, event_id) > 0:
        raise ValidationFailed("Cannot delete special event with existing bookings. Deactivate it instead.")

    await db.delete(event)
    await db.commit()
