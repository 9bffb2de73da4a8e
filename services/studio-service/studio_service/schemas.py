from datetime import date, datetime, time
from typing import Annotated, Literal, Union

from pydantic import BaseModel, EmailStr, Field, model_validator


class SlotRef(BaseModel):
    room_id: str
    date: date
    start_time: time


class HoldRequest(SlotRef):
    pass


class HoldResponse(BaseModel):
    room_id: str
    date: date
    start_time: time
    session_id: str
    created_at: datetime
    expires_at: datetime


class NormalBooking(BaseModel):
    kind: Literal["normal"]
    room_id: str
    room_name: str | None = None
    date: date
    start_time: time
    end_time: time
    price: int


class EventBooking(BaseModel):
    kind: Literal["event"]
    special_event_id: str
    special_event_name: str | None = None
    room_id: str
    room_name: str | None = None
    date: date
    start_time: time
    end_time: time
    price: int


CartLine = Annotated[Union[NormalBooking, EventBooking], Field(discriminator="kind")]


class CartValidateRequest(BaseModel):
    items: list[CartLine] = Field(min_length=1)


class CartLineResult(BaseModel):
    index: int
    item: CartLine
    valid: bool
    reason: str | None = None


class CartValidateResponse(BaseModel):
    valid: bool
    items: list[CartLineResult]
    total: int
    currency: str


class Customer(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    phone: str | None = None


class InvoiceDetails(BaseModel):
    required: bool = False
    company: str | None = None
    tax_number: str | None = None
    address: str | None = None


class CheckoutRequest(BaseModel):
    items: list[CartLine] = Field(min_length=1)
    customer: Customer
    invoice: InvoiceDetails | None = None
    language: Literal["hu", "en"] = "hu"
    terms_accepted: bool
    privacy_accepted: bool


class CheckoutResponse(BaseModel):
    order_id: str
    payment_id: str
    redirect_url: str
    total: int
    currency: str


class OrderItemOut(BaseModel):
    id: str
    room_id: str
    date: date
    start_time: time
    end_time: time
    unit_price: int
    status: str
    booking_id: str | None = None
    checkin_code: str | None = None
    special_event_id: str | None = None


class OrderStatusResponse(BaseModel):
    order_id: str
    status: str
    total: int
    currency: str
    payment_status: str | None = None
    items: list[OrderItemOut]


class InvoiceOut(BaseModel):
    id: str
    invoice_number: str
    gross_amount: int
    currency: str
    created_at: datetime
    has_pdf: bool


class ById(BaseModel):
    kind: Literal["id"] = "id"
    value: str


class BySlug(BaseModel):
    kind: Literal["slug"] = "slug"
    value: str


class SpecialEventIn(BaseModel):
    name: str = Field(min_length=1)
    slug: str | None = Field(default=None, pattern=r"^[a-z0-9-]+$")
    description: str | None = None
    room_id: str
    start_date: date
    end_date: date
    start_time: time
    end_time: time
    slot_duration_minutes: int = Field(gt=0)
    price_per_slot: int = Field(gt=0)
    active: bool = True

    @model_validator(mode="after")
    def check_ranges(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class SpecialEventUpdate(BaseModel):
    name: str | None = None
    slug: str | None = Field(default=None, pattern=r"^[a-z0-9-]+$")
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    slot_duration_minutes: int | None = Field(default=None, gt=0)
    price_per_slot: int | None = Field(default=None, gt=0)
    active: bool | None = None


class SpecialEventOut(BaseModel):
    id: str
    slug: str | None
    name: str
    description: str | None
    room_id: str
    start_date: date
    end_date: date
    start_time: time
    end_time: time
    slot_duration_minutes: int
    price_per_slot: int
    active: bool
    total_bookings: int | None = None

