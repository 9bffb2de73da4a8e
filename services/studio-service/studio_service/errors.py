"""
Domain errors raised by the booking engine.

Routes never build HTTP responses for these by hand; the handler registered in
main.py turns any StudioError into a JSON body with its status code.
"""

from typing import Any


class StudioError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class SlotUnavailable(StudioError):
    """Contention lost: somebody else holds or booked the slot."""

    status_code = 409
    code = "SLOT_UNAVAILABLE"


class ValidationFailed(StudioError):
    status_code = 400
    code = "VALIDATION_FAILED"


class UpstreamPaymentError(StudioError):
    status_code = 502
    code = "UPSTREAM_PAYMENT_ERROR"


class ReconciliationPartialFailure(StudioError):
    """Invoice or notification failed after bookings were committed. Logged, never surfaced."""

    code = "RECONCILIATION_PARTIAL_FAILURE"


class NotFound(StudioError):
    status_code = 404
    code = "NOT_FOUND"
