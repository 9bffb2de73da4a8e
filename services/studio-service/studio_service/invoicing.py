import base64
import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Invoice

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


class InvoicingError(Exception):
    pass


@dataclass
class IssuedInvoice:
    invoice_number: str
    pdf: bytes | None


class InvoiceClient:
    """Client for the external invoicing service. Raises InvoicingError on any failure."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def create_invoice(self, snapshot: dict) -> IssuedInvoice:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {
            "order_id": snapshot["order_id"],
            "language": snapshot["language"],
            "currency": snapshot["currency"],
            "total": snapshot["total"],
            "customer": {
                "name": snapshot["invoice_company"] or snapshot["customer_name"],
                "email": snapshot["email"],
                "tax_number": snapshot["invoice_tax_number"],
                "street": snapshot["billing_street"],
                "zip": snapshot["billing_zip"],
                "city": snapshot["billing_city"],
                "country": snapshot["billing_country"],
            },
            "items": [
                {
                    "name": f"{item.get('room_name') or item['room_id']} {item['date']} {item['start_time']}-{item['end_time']}",
                    "quantity": 1,
                    "unit": "hour",
                    "gross_unit_price": item["unit_price"],
                }
                for item in snapshot["items"]
                if item["status"] == "booked"
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/invoices", json=payload, headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            raise InvoicingError(f"Invoicing service call failed: {e}") from e
        except ValueError as e:
            raise InvoicingError("Invoicing service returned invalid JSON") from e

        number = body.get("invoice_number")
        if not number:
            raise InvoicingError("Invoicing service returned no invoice number")

        pdf = base64.b64decode(body["pdf_base64"]) if body.get("pdf_base64") else None
        return IssuedInvoice(invoice_number=number, pdf=pdf)


async def save_invoice(db: AsyncSession, snapshot: dict, issued: IssuedInvoice, *, now) -> Invoice:
    invoice = Invoice(
        order_id=snapshot["order_id"],
        invoice_number=issued.invoice_number,
        gross_amount=snapshot["total"],
        currency=snapshot["currency"],
        customer_name=snapshot["customer_name"],
        customer_email=snapshot["email"],
        pdf_data=issued.pdf,
        status="generated",
        created_at=now,
    )
    db.add(invoice)
    await db.commit()
    logger.info("invoice %s stored for order %s", issued.invoice_number, snapshot["order_id"])
    return invoice
