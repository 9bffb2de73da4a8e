import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ItemStatus:
    PENDING = "pending"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    FAILED = "failed"


# An order item holds its slot while both it and its order are in these sets.
OCCUPYING_ITEM_STATUSES = (ItemStatus.PENDING, ItemStatus.BOOKED)
OCCUPYING_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PAID)


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TempReservation(Base):
    __tablename__ = "temp_reservations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    room_id = Column(String, ForeignKey("rooms.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    session_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("room_id", "date", "start_time", name="uq_temp_reservations_slot"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, index=True, default=OrderStatus.PENDING)
    language = Column(String(2), nullable=False, default="hu")

    # customer snapshot taken at checkout, never edited afterwards
    customer_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)

    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    invoice_required = Column(Boolean, nullable=False, default=False)
    invoice_company = Column(String, nullable=True)
    invoice_tax_number = Column(String, nullable=True)
    invoice_address = Column(String, nullable=True)
    billing_street = Column(String, nullable=True)
    billing_city = Column(String, nullable=True)
    billing_zip = Column(String, nullable=True)
    billing_country = Column(String, nullable=True)

    terms_accepted = Column(Boolean, nullable=False, default=False)
    privacy_accepted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    room_id = Column(String, ForeignKey("rooms.id"), nullable=False)
    booking_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    unit_price = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=ItemStatus.PENDING)
    booking_id = Column(String, nullable=True, unique=True)
    checkin_code = Column(String(6), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_order_items_slot", "room_id", "booking_date", "start_time"),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    provider = Column(String, nullable=False)
    provider_ref = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False)
    payload_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class SpecialEvent(Base):
    __tablename__ = "special_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String, nullable=True, unique=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    room_id = Column(String, ForeignKey("rooms.id"), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=False)
    price_per_slot = Column(Integer, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SpecialEventBooking(Base):
    __tablename__ = "special_event_bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    special_event_id = Column(String(36), ForeignKey("special_events.id"), nullable=False, index=True)
    order_item_id = Column(String(36), ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, unique=True)


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_number = Column(String, nullable=False)
    gross_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    pdf_data = Column(LargeBinary, nullable=True)
    status = Column(String, nullable=False, default="generated")
    created_at = Column(DateTime(timezone=True), nullable=False)


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.EXPIRED},
    OrderStatus.PAID: {OrderStatus.FAILED, OrderStatus.CANCELLED},
}


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())
