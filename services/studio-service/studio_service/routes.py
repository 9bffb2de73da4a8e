import asyncio
import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from . import deps
from .availability import get_availability, get_event_availability
from .cart import validate_cart
from .clock import Clock
from .db import get_db
from .errors import ValidationFailed
from .orders import cancel_order, create_order, get_invoice_pdf, get_order_invoice, get_order_status
from .payments import SUCCEEDED
from .rbac import require_admin
from .reservations import create_hold, extend_hold, list_holds, remove_hold
from .schemas import (
    ById,
    BySlug,
    CartValidateRequest,
    CartValidateResponse,
    CheckoutRequest,
    CheckoutResponse,
    HoldRequest,
    HoldResponse,
    InvoiceOut,
    OrderStatusResponse,
    SpecialEventIn,
    SpecialEventOut,
    SpecialEventUpdate,
)
from .security import get_optional_user
from .special_events import create_event, delete_event, event_out, get_active_event, list_events, update_event

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


# ================= CONFIG / AVAILABILITY =================

@router.get("/config", tags=["Availability"])
async def public_config(studio=Depends(deps.get_studio), clock: Clock = Depends(deps.get_clock)):
    return {
        "studios": [{"id": s.id, "name": s.name} for s in studio.active_studios],
        "opening_hours": {"start": studio.opening_hours.start, "end": studio.opening_hours.end},
        "hourly_rate": studio.hourly_rate,
        "currency": studio.currency,
        "reservation_ttl_minutes": studio.reservation_ttl_minutes,
        "timezone": clock.tz_name,
    }


@router.get("/availability", tags=["Availability"])
async def availability(
    day: date = Query(alias="date"),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    studio=Depends(deps.get_studio),
):
    return await get_availability(db, day, clock=clock, studio=studio)


# ================= HOLDS =================

@router.post("/reservations", response_model=HoldResponse, tags=["Reservations"])
async def create_reservation(
    data: HoldRequest,
    session_id: str = Depends(deps.require_session_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    studio=Depends(deps.get_studio),
):
    return await create_hold(db, data.room_id, data.date, data.start_time, session_id, clock=clock, studio=studio)


@router.delete("/reservations", tags=["Reservations"])
async def delete_reservation(
    data: HoldRequest,
    session_id: str = Depends(deps.require_session_id),
    db: AsyncSession = Depends(get_db),
):
    removed = await remove_hold(db, data.room_id, data.date, data.start_time, session_id)
    return {"removed": removed}


@router.get("/reservations", response_model=list[HoldResponse], tags=["Reservations"])
async def my_reservations(
    session_id: str = Depends(deps.require_session_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
):
    return await list_holds(db, session_id, clock=clock)


@router.put("/reservations/extend", tags=["Reservations"])
async def extend_reservation(
    data: HoldRequest,
    session_id: str = Depends(deps.require_session_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    studio=Depends(deps.get_studio),
):
    extended = await extend_hold(
        db,
        data.room_id,
        data.date,
        data.start_time,
        session_id,
        clock=clock,
        ttl_minutes=studio.reservation_ttl_minutes,
    )
    return {"extended": extended}


# ================= CART / CHECKOUT =================

@router.post("/cart/validate", response_model=CartValidateResponse, tags=["Checkout"])
async def cart_validate(
    data: CartValidateRequest,
    session_id: str | None = Depends(deps.get_session_id),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    studio=Depends(deps.get_studio),
):
    return await validate_cart(db, data.items, clock=clock, studio=studio, session_id=session_id)


@router.post("/checkout", response_model=CheckoutResponse, tags=["Checkout"])
async def checkout(
    data: CheckoutRequest,
    session_id: str | None = Depends(deps.get_session_id),
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    studio=Depends(deps.get_studio),
    provider=Depends(deps.get_payment_provider),
    notifier=Depends(deps.get_notifier),
):
    return await create_order(
        db,
        data,
        clock=clock,
        studio=studio,
        provider=provider,
        notifier=notifier,
        user_id=str(user["sub"]) if user and user.get("sub") else None,
        session_id=session_id,
    )


# ================= ORDERS =================

@router.get("/orders/{order_id}/status", response_model=OrderStatusResponse, tags=["Orders"])
async def order_status(
    order_id: str,
    user=Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    provider=Depends(deps.get_payment_provider),
    reconciler=Depends(deps.get_reconciler),
):
    return await get_order_status(db, order_id, provider=provider, reconciler=reconciler, user=user)


@router.get("/orders/{order_id}/invoice", response_model=InvoiceOut, tags=["Orders"])
async def order_invoice(order_id: str, user=Depends(get_optional_user), db: AsyncSession = Depends(get_db)):
    invoice = await get_order_invoice(db, order_id, user=user)
    return InvoiceOut(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        gross_amount=invoice.gross_amount,
        currency=invoice.currency,
        created_at=invoice.created_at,
        has_pdf=bool(invoice.pdf_data),
    )


@router.get("/invoices/{invoice_id}/download", tags=["Orders"])
async def download_invoice(invoice_id: str, user=Depends(get_optional_user), db: AsyncSession = Depends(get_db)):
    invoice = await get_invoice_pdf(db, invoice_id, user=user)
    return Response(
        content=invoice.pdf_data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="invoice-{invoice.invoice_number}.pdf"'},
    )


@admin_router.post("/orders/{order_id}/cancel")
async def admin_cancel_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    notifier=Depends(deps.get_notifier),
):
    status = await cancel_order(db, order_id, clock=clock, notifier=notifier)
    return {"order_id": order_id, "status": status}


# ================= WEBHOOKS =================

async def _read_callback(request: Request) -> dict:
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


@router.post("/webhooks/barion", tags=["Webhooks"])
async def barion_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider=Depends(deps.get_payment_provider),
    reconciler=Depends(deps.get_reconciler),
):
    """
    Provider callback. Always acknowledged once a PaymentId is present, so the
    provider does not keep retrying; settlement is idempotent anyway.

    The callback is unauthenticated, so a reported success is never taken at
    its word: the provider is asked for the real state first.
    """
    payload = await _read_callback(request)
    payment_id = str(payload.get("PaymentId") or "").strip()
    if not payment_id:
        raise ValidationFailed("PaymentId is required")

    try:
        state = payload.get("PaymentState")
        raw = None
        if not state or state == SUCCEEDED:
            reported = await provider.get_payment_state(payment_id)
            state, raw = reported.status, reported.raw
        result = await reconciler.apply_payment_state(db, payment_id, state, raw)
        logger.info("callback for payment %s (%s): order %s is %s", payment_id, state, result.order_id, result.order_status)
    except Exception:
        logger.exception("callback processing failed for payment %s", payment_id)

    return {"received": True}


# ================= SPECIAL EVENTS =================

@router.get("/special-events", response_model=list[SpecialEventOut], tags=["Special events"])
async def special_events(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
):
    return await list_events(db, active_only=active_only, today=clock.today())


@router.get("/special-events/by-id/{event_id}", response_model=SpecialEventOut, tags=["Special events"])
async def special_event_by_id(event_id: str, db: AsyncSession = Depends(get_db)):
    return event_out(await get_active_event(db, ById(value=event_id)))


@router.get("/special-events/by-slug/{slug}", response_model=SpecialEventOut, tags=["Special events"])
async def special_event_by_slug(slug: str, db: AsyncSession = Depends(get_db)):
    return event_out(await get_active_event(db, BySlug(value=slug)))


async def _event_availability(db, ref, day, clock):
    event = await get_active_event(db, ref)
    return {
        "event": event_out(event),
        "date": day.isoformat(),
        "slots": await get_event_availability(db, event, day, clock=clock),
    }


@router.get("/special-events/by-id/{event_id}/availability", tags=["Special events"])
async def special_event_availability_by_id(
    event_id: str,
    day: date = Query(alias="date"),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
):
    return await _event_availability(db, ById(value=event_id), day, clock)


@router.get("/special-events/by-slug/{slug}/availability", tags=["Special events"])
async def special_event_availability_by_slug(
    slug: str,
    day: date = Query(alias="date"),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
):
    return await _event_availability(db, BySlug(value=slug), day, clock)


@admin_router.post("/special-events", response_model=SpecialEventOut)
async def admin_create_event(
    data: SpecialEventIn,
    db: AsyncSession = Depends(get_db),
    studio=Depends(deps.get_studio),
):
    return event_out(await create_event(db, data, studio=studio))


@admin_router.put("/special-events/{event_id}", response_model=SpecialEventOut)
async def admin_update_event(
    event_id: str,
    data: SpecialEventUpdate,
    db: AsyncSession = Depends(get_db),
):
    return event_out(await update_event(db, event_id, data))


@admin_router.delete("/special-events/{event_id}")
async def admin_delete_event(event_id: str, db: AsyncSession = Depends(get_db)):
    await delete_event(db, event_id)
    return {"message": "Special event deleted"}


# ================= BREAKERS =================

@admin_router.get("/breakers")
async def breakers_status():
    statuses = await asyncio.gather(*[b.status() for b in deps.cb_registry.values()])
    return {"breakers": sorted(statuses, key=lambda x: x["name"])}


@admin_router.post("/breakers/{name}/{action}")
async def breaker_action(name: str, action: str):
    b = deps.cb_registry.get(name)
    if not b:
        raise HTTPException(status_code=404, detail="Breaker not found")
    if action == "open":
        await b.open()
    elif action == "close":
        await b.close()
    else:
        raise HTTPException(status_code=404, detail="Unknown breaker action")
    return {"message": "opened" if action == "open" else "closed", "breaker": await b.status()}
