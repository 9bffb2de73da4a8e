import logging
from dataclasses import dataclass, field

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .errors import UpstreamPaymentError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

SUCCEEDED = "Succeeded"
FAILED = "Failed"
CANCELED = "Canceled"
EXPIRED = "Expired"


@dataclass
class PaymentLine:
    name: str
    description: str
    unit_price: int
    quantity: int = 1
    unit: str = "hour"


@dataclass
class StartedPayment:
    payment_id: str
    redirect_url: str
    raw: dict = field(default_factory=dict)


@dataclass
class PaymentState:
    payment_id: str
    status: str
    raw: dict = field(default_factory=dict)


class BarionClient:
    """
    Barion REST client.

    Every failure mode (open breaker, timeout, non-2xx, unusable body) comes
    out as UpstreamPaymentError so checkout can roll back on a single type.
    """

    provider = "barion"

    def __init__(
        self,
        base_url: str,
        pos_key: str,
        payee_email: str,
        frontend_url: str,
        backend_url: str,
        breaker: CircuitBreaker,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.pos_key = pos_key
        self.payee_email = payee_email
        self.frontend_url = frontend_url
        self.backend_url = backend_url
        self.breaker = breaker
        self.timeout = timeout

    async def _call_with_breaker(self, method: str, path: str, *, json: dict | None = None, params: dict | None = None):
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise UpstreamPaymentError(str(e), {"provider": self.provider})

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method=method, url=url, json=json, params=params)
                resp.raise_for_status()
                body = resp.json() if resp.content else {}
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            raise UpstreamPaymentError(f"Timeout calling payment provider: {path}", {"provider": self.provider})
        except httpx.HTTPStatusError as e:
            await self.breaker.record_failure()
            logger.error("payment provider %s answered %s: %s", path, e.response.status_code, e.response.text)
            raise UpstreamPaymentError(
                f"Payment provider error on {path}",
                {"provider": self.provider, "status": e.response.status_code},
            )
        except (httpx.HTTPError, ValueError) as e:
            await self.breaker.record_failure()
            raise UpstreamPaymentError(f"Bad response from payment provider: {e}", {"provider": self.provider})

        await self.breaker.record_success()
        return body

    def build_start_request(
        self,
        order_id: str,
        lines: list[PaymentLine],
        total: int,
        currency: str,
        locale: str,
        payer_email: str | None = None,
    ) -> dict:
        payload = {
            "POSKey": self.pos_key,
            "PaymentType": "Immediate",
            "GuestCheckOut": True,
            "FundingSources": ["All"],
            "PaymentRequestId": f"order-{order_id}",
            "Locale": locale,
            "Currency": currency,
            "Transactions": [
                {
                    "POSTransactionId": f"trans-{order_id}",
                    "Payee": self.payee_email,
                    "Total": total,
                    "Items": [
                        {
                            "Name": line.name,
                            "Description": line.description,
                            "Quantity": line.quantity,
                            "Unit": line.unit,
                            "UnitPrice": line.unit_price,
                            "ItemTotal": line.quantity * line.unit_price,
                            "SKU": f"item-{i + 1}",
                        }
                        for i, line in enumerate(lines)
                    ],
                }
            ],
            "RedirectUrl": f"{self.frontend_url}/payment/result?orderId={order_id}",
            "CallbackUrl": f"{self.backend_url}/webhooks/barion",
        }
        if payer_email:
            payload["PayerHint"] = payer_email
        return payload

    async def start_payment(
        self,
        order_id: str,
        lines: list[PaymentLine],
        total: int,
        currency: str,
        locale: str,
        payer_email: str | None = None,
    ) -> StartedPayment:
        if not self.pos_key or not self.payee_email:
            raise UpstreamPaymentError("Payment provider is not configured", {"provider": self.provider})

        body = await self._call_with_breaker(
            "POST",
            "/v2/Payment/Start",
            json=self.build_start_request(order_id, lines, total, currency, locale, payer_email),
        )
        payment_id = body.get("PaymentId")
        if not payment_id:
            raise UpstreamPaymentError(
                "Payment provider did not return a payment id",
                {"provider": self.provider, "errors": body.get("Errors")},
            )

        logger.info("payment %s started for order %s", payment_id, order_id)
        return StartedPayment(payment_id=payment_id, redirect_url=body.get("GatewayUrl") or "", raw=body)

    async def get_payment_state(self, payment_id: str) -> PaymentState:
        body = await self._call_with_breaker(
            "GET",
            "/v2/Payment/GetPaymentState",
            params={"POSKey": self.pos_key, "PaymentId": payment_id},
        )
        status = body.get("Status")
        if not status:
            raise UpstreamPaymentError("Payment provider returned no status", {"provider": self.provider})
        return PaymentState(payment_id=payment_id, status=status, raw=body)
