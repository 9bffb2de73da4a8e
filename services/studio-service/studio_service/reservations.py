import logging
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import Date, DateTime, String, Time, delete, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import dialect_name

from .availability import hold_end, is_past, occupying_item_exists, slot_filter
from .clock import Clock
from .config import StudioConfig
from .db import lock_slots
from .errors import SlotUnavailable, ValidationFailed
from .models import TempReservation
from .slots import Slot, hourly_slots

logger = logging.getLogger(__name__)


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _insert_for(db: AsyncSession):
    if dialect_name(db) == "postgresql":
        return pg_insert
    return sqlite_insert


def _hold_out(row) -> dict:
    return {
        "room_id": row.room_id,
        "date": row.date,
        "start_time": row.start_time,
        "session_id": row.session_id,
        "created_at": as_utc(row.created_at),
        "expires_at": as_utc(row.expires_at),
    }


async def create_hold(
    db: AsyncSession,
    room_id: str,
    day: date,
    start: time,
    session_id: str,
    *,
    clock: Clock,
    studio: StudioConfig,
) -> dict:
    """
    Take or refresh a hold on (room, day, start) for `session_id`.

    One INSERT ... SELECT ... ON CONFLICT DO UPDATE does the whole check-and-act:
    the SELECT yields nothing if an order item overlaps the slot, and the
    conflict update only fires when the existing hold is ours or has expired.
    No returned row means somebody else has the slot.
    """
    room = studio.studio(room_id)
    if room is None or not room.active:
        raise ValidationFailed("Unknown studio", {"room_id": room_id})
    end = hold_end(day, start)
    if Slot(room_id, day, start, end) not in hourly_slots(room_id, day, studio.opening_hours):
        raise ValidationFailed(
            "Slot is not offered", {"room_id": room_id, "date": day.isoformat(), "start_time": start.strftime("%H:%M")}
        )
    if is_past(day, start, clock.now()):
        raise ValidationFailed("Slot is in the past", {"room_id": room_id, "date": day.isoformat()})

    now = clock.utcnow()
    expires_at = now + timedelta(minutes=studio.reservation_ttl_minutes)

    await lock_slots(db, [(room_id, day, start)])

    insert = _insert_for(db)
    table = TempReservation.__table__
    source = select(
        literal(room_id, String),
        literal(day, Date),
        literal(start, Time),
        literal(session_id, String),
        literal(now, DateTime(timezone=True)),
        literal(expires_at, DateTime(timezone=True)),
    ).where(~occupying_item_exists(room_id, day, start, end))

    stmt = insert(table).from_select(
        ["room_id", "date", "start_time", "session_id", "created_at", "expires_at"],
        source,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.room_id, table.c.date, table.c.start_time],
        set_={
            "session_id": stmt.excluded.session_id,
            "created_at": stmt.excluded.created_at,
            "expires_at": stmt.excluded.expires_at,
        },
        where=(table.c.session_id == stmt.excluded.session_id) | (table.c.expires_at <= now),
    ).returning(
        table.c.room_id,
        table.c.date,
        table.c.start_time,
        table.c.session_id,
        table.c.created_at,
        table.c.expires_at,
    )

    res = await db.execute(stmt)
    row = res.first()
    await db.commit()

    if row is None:
        raise SlotUnavailable(
            "Slot is no longer available",
            {"room_id": room_id, "date": day.isoformat(), "start_time": start.strftime("%H:%M")},
        )

    logger.info("hold %s %s %s for session %s until %s", room_id, day, start, session_id, expires_at)
    return _hold_out(row)


async def remove_hold(db: AsyncSession, room_id: str, day: date, start: time, session_id: str) -> bool:
    res = await db.execute(
        delete(TempReservation).where(
            slot_filter(TempReservation, room_id, day, start),
            TempReservation.session_id == session_id,
        )
    )
    await db.commit()
    return res.rowcount > 0


async def list_holds(db: AsyncSession, session_id: str, *, clock: Clock) -> list[dict]:
    res = await db.execute(
        select(TempReservation)
        .where(
            TempReservation.session_id == session_id,
            TempReservation.expires_at > clock.utcnow(),
        )
        .order_by(TempReservation.date, TempReservation.start_time)
    )
    return [_hold_out(r) for r in res.scalars().all()]


async def extend_hold(
    db: AsyncSession,
    room_id: str,
    day: date,
    start: time,
    session_id: str,
    *,
    clock: Clock,
    ttl_minutes: int,
) -> bool:
    """Push an owned, still-live hold's expiry to now + TTL. False if there is none."""
    now = clock.utcnow()
    res = await db.execute(
        update(TempReservation)
        .where(
            slot_filter(TempReservation, room_id, day, start),
            TempReservation.session_id == session_id,
            TempReservation.expires_at > now,
        )
        .values(expires_at=now + timedelta(minutes=ttl_minutes))
    )
    await db.commit()
    return res.rowcount > 0


async def release_slot_holds(db: AsyncSession, keys) -> int:
    """
    Drop every hold on the given slots, whoever owns it.

    Runs inside the caller's transaction once an order item has claimed the
    slots; the caller commits.
    """
    removed = 0
    for room_id, day, start in keys:
        res = await db.execute(delete(TempReservation).where(slot_filter(TempReservation, room_id, day, start)))
        removed += res.rowcount or 0
    return removed


async def cleanup_expired(db: AsyncSession, now: datetime) -> int:
    """Delete holds whose expiry has passed. Live holds are never touched."""
    res = await db.execute(delete(TempReservation).where(TempReservation.expires_at <= now))
    await db.commit()
    count = res.rowcount or 0
    if count:
        logger.info("removed %d expired holds", count)
    return count
