import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError

from . import deps
from .cleanup_worker import cleanup_loop
from .config import (
    AUTO_CREATE_SCHEMA,
    CLEANUP_INTERVAL_SECONDS,
    LOG_LEVEL,
    PENDING_ORDER_TIMEOUT_MINUTES,
    RATE_LIMIT_PER_MINUTE,
)
from .db import SessionLocal, engine, init_models, sync_rooms
from .errors import StudioError
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .redis_client import redis_client
from .routes import admin_router, router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "System", "description": "Health and operational endpoints."},
    {"name": "Availability", "description": "Public studio configuration and slot availability."},
    {"name": "Reservations", "description": "Short-lived slot holds scoped to a client session."},
    {"name": "Checkout", "description": "Cart validation and order creation."},
    {"name": "Orders", "description": "Order status, invoices."},
    {"name": "Webhooks", "description": "Payment provider callbacks."},
    {"name": "Special events", "description": "Time-boxed events with their own slot grid and price."},
    {"name": "Admin", "description": "Admin-only operations."},
]

app = FastAPI(title="Studio Booking Service", openapi_tags=OPENAPI_TAGS)

app.add_middleware(RateLimitMiddleware, redis=redis_client, max_per_minute=RATE_LIMIT_PER_MINUTE)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(router)
app.include_router(admin_router)

_stop_event = asyncio.Event()
_cleanup_task = None


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", tags=["System"])
async def health():
    return {
        "status": "ok",
        "service": "studio-service",
        "events_enabled": deps.publisher.enabled,
        "redis_enabled": redis_client is not None,
    }


@app.on_event("startup")
async def startup():
    global _cleanup_task
    try:
        if AUTO_CREATE_SCHEMA:
            await init_models(engine, deps.studio_config)
        else:
            async with SessionLocal() as db:
                await sync_rooms(db, deps.studio_config)
    except DBAPIError as e:
        logger.warning("room sync skipped, schema not ready: %s", e.orig)

    try:
        await deps.publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)

    _stop_event.clear()
    _cleanup_task = asyncio.create_task(
        cleanup_loop(
            _stop_event,
            SessionLocal,
            deps.clock,
            CLEANUP_INTERVAL_SECONDS,
            PENDING_ORDER_TIMEOUT_MINUTES,
        )
    )


@app.on_event("shutdown")
async def shutdown():
    global _cleanup_task
    _stop_event.set()
    if _cleanup_task:
        await _cleanup_task
        _cleanup_task = None
    try:
        await deps.publisher.close()
    except Exception as e:
        logger.warning("RabbitMQ close failed: %s", e)
    await engine.dispose()
