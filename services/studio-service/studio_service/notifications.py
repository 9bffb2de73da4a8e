import base64
import logging

from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher

logger = logging.getLogger(__name__)

SOURCE = "studio-service"


def order_snapshot(order, items, *, room_names: dict[str, str] | None = None, event_links: dict | None = None) -> dict:
    """Plain-dict copy of an order and its items handed to invoicing and notifications."""
    room_names = room_names or {}
    event_links = event_links or {}
    return {
        "order_id": order.id,
        "status": order.status,
        "language": order.language,
        "customer_name": order.customer_name,
        "email": order.email,
        "phone": order.phone,
        "total": order.total_amount,
        "currency": order.currency,
        "invoice_required": order.invoice_required,
        "invoice_company": order.invoice_company,
        "invoice_tax_number": order.invoice_tax_number,
        "billing_street": order.billing_street,
        "billing_zip": order.billing_zip,
        "billing_city": order.billing_city,
        "billing_country": order.billing_country,
        "items": [
            {
                "id": item.id,
                "room_id": item.room_id,
                "room_name": room_names.get(item.room_id),
                "date": item.booking_date,
                "start_time": item.start_time,
                "end_time": item.end_time,
                "unit_price": item.unit_price,
                "status": item.status,
                "booking_id": item.booking_id,
                "checkin_code": item.checkin_code,
                "special_event_id": event_links.get(item.id),
            }
            for item in items
        ],
    }


class Notifier:
    """
    Publishes booking lifecycle events for the mailer.

    Publishing errors propagate; callers decide whether they are fatal.
    """

    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def _publish(self, event_type: str, data: dict):
        await self.publisher.publish(event_type, to_json(build_event(event_type, data, source=SOURCE)))
        logger.info("published %s for order %s", event_type, data.get("order_id"))

    async def order_created(self, snapshot: dict):
        await self._publish("order.created", snapshot)

    async def booking_confirmed(self, snapshot: dict, calendar_ics: str, invoice_pdf: bytes | None = None):
        data = dict(snapshot)
        data["calendar_ics"] = calendar_ics
        if invoice_pdf:
            data["invoice_pdf_base64"] = base64.b64encode(invoice_pdf).decode("ascii")
        await self._publish("booking.confirmed", data)

    async def booking_failed(self, snapshot: dict, reason: str):
        data = dict(snapshot)
        data["reason"] = reason
        await self._publish("booking.failed", data)

    async def booking_cancelled(self, snapshot: dict):
        await self._publish("booking.cancelled", snapshot)
