import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ["RABBIT_URL"] = ""
os.environ["INVOICE_API_URL"] = ""
os.environ["JWT_SECRET"] = "test-secret"

import uuid
from datetime import date, datetime, time, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from shared.database import Base, get_engine, get_session

from studio_service import deps
from studio_service.clock import FixedClock
from studio_service.config import OpeningHours, Studio, StudioConfig
from studio_service.db import get_db, sync_rooms
from studio_service.errors import UpstreamPaymentError
from studio_service.invoicing import InvoicingError, IssuedInvoice
from studio_service.main import app
from studio_service.models import ItemStatus, Order, OrderItem, Payment
from studio_service.payments import PaymentState, StartedPayment
from studio_service.settlement import SettlementReconciler

TZ = "Europe/Budapest"
TODAY = date(2025, 6, 9)
TOMORROW = date(2025, 6, 10)
RATE = 15000


class FakeProvider:
    provider = "barion"

    def __init__(self):
        self.started = []
        self.states: dict[str, str] = {}
        self.state_calls = []
        self.fail_start = False
        self.fail_state = False

    async def start_payment(self, order_id, lines, total, currency, locale, payer_email=None):
        if self.fail_start:
            raise UpstreamPaymentError("Payment provider error on /v2/Payment/Start", {"provider": "barion"})
        payment_id = f"pay-{len(self.started) + 1}"
        self.started.append(
            {"order_id": order_id, "lines": lines, "total": total, "currency": currency, "locale": locale}
        )
        self.states[payment_id] = "Prepared"
        return StartedPayment(
            payment_id=payment_id,
            redirect_url=f"https://secure.test.barion.com/Pay?Id={payment_id}",
            raw={"PaymentId": payment_id, "Status": "Prepared"},
        )

    async def get_payment_state(self, payment_id):
        self.state_calls.append(payment_id)
        if self.fail_state:
            raise UpstreamPaymentError("Timeout calling payment provider", {"provider": "barion"})
        status = self.states.get(payment_id, "Prepared")
        return PaymentState(payment_id=payment_id, status=status, raw={"PaymentId": payment_id, "Status": status})


class FakeNotifier:
    def __init__(self):
        self.events = []
        self.fail = False

    async def _record(self, event_type, snapshot, **extra):
        if self.fail:
            raise RuntimeError("broker unreachable")
        self.events.append({"type": event_type, "snapshot": snapshot, **extra})

    async def order_created(self, snapshot):
        await self._record("order.created", snapshot)

    async def booking_confirmed(self, snapshot, calendar_ics, invoice_pdf=None):
        await self._record("booking.confirmed", snapshot, calendar_ics=calendar_ics, invoice_pdf=invoice_pdf)

    async def booking_failed(self, snapshot, reason):
        await self._record("booking.failed", snapshot, reason=reason)

    async def booking_cancelled(self, snapshot):
        await self._record("booking.cancelled", snapshot)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


class FakeInvoicer:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def create_invoice(self, snapshot):
        self.calls.append(snapshot)
        if self.fail:
            raise InvoicingError("Invoicing service call failed: connection refused")
        return IssuedInvoice(invoice_number=f"INV-{len(self.calls)}", pdf=b"%PDF-1.4 test")


class FakeRedis:
    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = str(value)

    async def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        return key in self.data

    async def delete(self, key):
        self.data.pop(key, None)

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return queue

    async def execute(self):
        for name, args, kwargs in self.ops:
            await getattr(self.redis, name)(*args, **kwargs)
        self.ops = []


@pytest.fixture
def clock():
    # 14:30 in Budapest on TODAY
    return FixedClock(TZ, datetime(2025, 6, 9, 14, 30))


@pytest.fixture
def studio():
    return StudioConfig(
        studios=(
            Studio(id="studio-a", name="Studio A"),
            Studio(id="studio-b", name="Studio B"),
            Studio(id="studio-c", name="Studio C"),
            Studio(id="makeup", name="Makeup Studio"),
        ),
        opening_hours=OpeningHours(start=8, end=20),
        hourly_rate=RATE,
        currency="HUF",
        reservation_ttl_minutes=10,
    )


@pytest_asyncio.fixture
async def engine(tmp_path, studio):
    from studio_service import models  # noqa: F401

    eng = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with get_session(eng)() as db:
        await sync_rooms(db, studio)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def invoicer():
    return FakeInvoicer()


@pytest.fixture
def reconciler(clock, studio, invoicer, notifier):
    return SettlementReconciler(clock=clock, studio=studio, invoicer=invoicer, notifier=notifier)


@pytest_asyncio.fixture
async def client(session_factory, clock, studio, provider, notifier, invoicer):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.dependency_overrides[deps.get_studio] = lambda: studio
    app.dependency_overrides[deps.get_payment_provider] = lambda: provider
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_invoicer] = lambda: invoicer

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


def token_for(sub="user-1", roles=("user",)):
    return jwt.encode({"sub": sub, "roles": list(roles)}, "test-secret", algorithm="HS256")


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {token_for('admin-1', ('admin',))}"}


@pytest.fixture
def make_order(session_factory, clock):
    """Insert an order with items and a payment row directly; returns (order_id, payment_ref)."""

    async def _make(lines, *, status="pending", payment_status="pending", user_id=None):
        now = clock.utcnow()
        order_id = str(uuid.uuid4())
        payment_ref = f"pay-{order_id[:8]}"
        async with session_factory() as db:
            db.add(
                Order(
                    id=order_id,
                    user_id=user_id,
                    status=status,
                    language="en",
                    customer_name="Test Customer",
                    email="customer@example.com",
                    total_amount=RATE * len(lines),
                    currency="HUF",
                    invoice_required=False,
                    terms_accepted=True,
                    privacy_accepted=True,
                    created_at=now,
                    updated_at=now,
                )
            )
            await db.flush()
            for room_id, day, start, item_status in lines:
                st = time.fromisoformat(start)
                booked = item_status == ItemStatus.BOOKED
                db.add(
                    OrderItem(
                        id=str(uuid.uuid4()),
                        order_id=order_id,
                        room_id=room_id,
                        booking_date=day,
                        start_time=st,
                        end_time=(datetime.combine(day, st) + timedelta(hours=1)).time(),
                        unit_price=RATE,
                        status=item_status,
                        booking_id=f"BK-seed-{uuid.uuid4().hex[:9]}" if booked else None,
                        checkin_code=uuid.uuid4().hex[:6].upper() if booked else None,
                        created_at=now,
                        updated_at=now,
                    )
                )
            db.add(
                Payment(
                    order_id=order_id,
                    provider="barion",
                    provider_ref=payment_ref,
                    status=payment_status,
                    created_at=now,
                    updated_at=now,
                )
            )
            await db.commit()
        return order_id, payment_ref

    return _make


def normal_line(room_id="studio-a", day=TOMORROW, start="10:00", end=None, price=RATE):
    st = time.fromisoformat(start)
    end = end or (datetime.combine(day, st) + timedelta(hours=1)).time().strftime("%H:%M")
    return {
        "kind": "normal",
        "room_id": room_id,
        "date": day.isoformat(),
        "start_time": start,
        "end_time": end,
        "price": price,
    }


def checkout_body(*lines, **overrides):
    body = {
        "items": list(lines),
        "customer": {"name": "Anna Kovacs", "email": "anna@example.com", "phone": "+36301234567"},
        "invoice": {"required": True, "company": "Foto Kft", "tax_number": "12345678-1-42", "address": "Fo utca 1, 1011 Budapest"},
        "language": "hu",
        "terms_accepted": True,
        "privacy_accepted": True,
    }
    body.update(overrides)
    return body
