import asyncio
import logging
from datetime import timedelta

from .orders import expire_stale_orders
from .reservations import cleanup_expired

logger = logging.getLogger(__name__)


async def cleanup_once(session_factory, clock, pending_timeout_minutes: int = 0) -> dict:
    now = clock.utcnow()
    async with session_factory() as db:
        holds = await cleanup_expired(db, now)
        orders = 0
        if pending_timeout_minutes > 0:
            orders = await expire_stale_orders(db, now - timedelta(minutes=pending_timeout_minutes), now=now)
    return {"holds": holds, "orders": orders}


async def cleanup_loop(
    stop_event: asyncio.Event,
    session_factory,
    clock,
    interval_seconds: float,
    pending_timeout_minutes: int = 0,
):
    """
    Periodic hygiene: drop expired holds and, if configured, expire stale orders.

    Hold expiry is already enforced at read time; this only keeps the table small.
    """
    while not stop_event.is_set():
        try:
            await cleanup_once(session_factory, clock, pending_timeout_minutes)
        except Exception:
            logger.exception("cleanup tick failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
