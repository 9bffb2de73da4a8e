import hashlib

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Base, dialect_name, get_engine, get_session

from .config import DATABASE_ECHO, DATABASE_URL

engine = get_engine(DATABASE_URL, echo=DATABASE_ECHO)
SessionLocal = get_session(engine)


async def get_db():
    async with SessionLocal() as session:
        yield session


async def init_models(bind, studio_config):
    """Create missing tables and upsert the configured rooms (dev/test bootstrap)."""
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with get_session(bind)() as db:
        await sync_rooms(db, studio_config)


async def sync_rooms(db: AsyncSession, studio_config):
    from .models import Room

    res = await db.execute(select(Room))
    existing = {r.id: r for r in res.scalars().all()}
    for studio in studio_config.studios:
        room = existing.get(studio.id)
        if room is None:
            db.add(Room(id=studio.id, name=studio.name, active=studio.active))
        else:
            room.name = studio.name
            room.active = studio.active
    await db.commit()


def room_day_lock_key(room_id: str, day) -> int:
    digest = hashlib.blake2b(f"{room_id}|{day.isoformat()}".encode(), digest_size=8)
    return int.from_bytes(digest.digest(), "big", signed=True)


async def lock_slots(db: AsyncSession, keys):
    """
    Transaction-scoped advisory locks for the (room, date) of each slot key.

    Slots of different lengths can overlap without sharing a start time, so
    the lock covers the whole room-day. Keys are taken in sorted order so two
    transactions locking overlapping carts cannot deadlock. SQLite has no
    advisory locks; there the database write lock is taken instead, which
    serializes every slot-claiming transaction.
    """
    dialect = dialect_name(db)
    if dialect == "sqlite":
        await db.execute(text("UPDATE rooms SET active = active WHERE 1 = 0"))
        return
    if dialect != "postgresql":
        return
    for lock_key in sorted({room_day_lock_key(room_id, day) for room_id, day, _ in keys}):
        await db.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": lock_key})
