"""Process-wide collaborators, exposed as FastAPI dependencies so tests can swap them."""

from fastapi import Depends, Header

from shared.rabbitmq import RabbitPublisher

from .breaker import CircuitBreaker
from .clock import Clock
from .config import (
    BACKEND_URL,
    BARION_BASE_URL,
    BARION_PAYEE_EMAIL,
    BARION_POS_KEY,
    BUSINESS_TIMEZONE,
    FRONTEND_URL,
    INVOICE_API_KEY,
    INVOICE_API_URL,
    RABBIT_URL,
    load_studio_config,
)
from .errors import ValidationFailed
from .invoicing import InvoiceClient
from .notifications import Notifier
from .payments import BarionClient
from .redis_client import redis_client
from .settlement import SettlementReconciler

publisher = RabbitPublisher(RABBIT_URL)
notifier = Notifier(publisher)

clock = Clock(BUSINESS_TIMEZONE)
studio_config = load_studio_config()

cb_barion = CircuitBreaker("barion", redis=redis_client, failure_threshold=5, reset_timeout_seconds=30)
cb_registry = {cb_barion.name: cb_barion}

barion = BarionClient(
    base_url=BARION_BASE_URL,
    pos_key=BARION_POS_KEY,
    payee_email=BARION_PAYEE_EMAIL,
    frontend_url=FRONTEND_URL,
    backend_url=BACKEND_URL,
    breaker=cb_barion,
)

invoicer = InvoiceClient(INVOICE_API_URL, INVOICE_API_KEY) if INVOICE_API_URL else None


def get_clock() -> Clock:
    return clock


def get_studio():
    return studio_config


def get_payment_provider() -> BarionClient:
    return barion


def get_invoicer() -> InvoiceClient | None:
    return invoicer


def get_notifier() -> Notifier | None:
    return notifier


def get_reconciler(
    clock: Clock = Depends(get_clock),
    studio=Depends(get_studio),
    invoicer: InvoiceClient | None = Depends(get_invoicer),
    notifier: Notifier | None = Depends(get_notifier),
) -> SettlementReconciler:
    return SettlementReconciler(clock=clock, studio=studio, invoicer=invoicer, notifier=notifier)


def get_session_id(x_session_id: str | None = Header(default=None)) -> str | None:
    return x_session_id or None


def require_session_id(session_id: str | None = Depends(get_session_id)) -> str:
    if not session_id:
        raise ValidationFailed("X-Session-Id header is required")
    return session_id
