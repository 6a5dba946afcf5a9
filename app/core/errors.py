"""Booking error taxonomy.

Every user-facing failure of the booking engine is an HTTPException subclass
so services can raise it directly and FastAPI renders it as
``{"detail": {"error": ..., "code": ..., ...}}``.
"""

from typing import Any, Optional

from fastapi import HTTPException, status


class BookingError(HTTPException):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "BOOKING_FAILED"
    retry: Optional[bool] = None

    def __init__(self, message: str, **extra: Any):
        self.message = message
        detail: dict[str, Any] = {"error": message, "code": self.code}
        if self.retry is not None:
            detail["retry"] = self.retry
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)


# Contention ------------------------------------------------------------------

class SlotBlocked(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "SLOT_BLOCKED"
    retry = True


class AlreadyConfirmed(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ALREADY_CONFIRMED"


class SlotUnavailable(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "SLOT_UNAVAILABLE"
    retry = False


# Policy violations -----------------------------------------------------------

class PaymentModeMismatch(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "PAYMENT_MODE_MISMATCH"


class SlotNotBookable(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "SLOT_NOT_BOOKABLE"


class NoActivePlan(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "NO_ACTIVE_PLAN"


class OnlinePaymentsDisabled(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ONLINE_PAYMENTS_DISABLED"


class RescheduleNotAllowed(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "RESCHEDULE_NOT_ALLOWED"


class InvalidTransition(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_TRANSITION"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class NotAuthorized(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_AUTHORIZED"


# Expiry ----------------------------------------------------------------------

class BookingExpired(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "BOOKING_EXPIRED"
    retry = True


# External integration --------------------------------------------------------

class InvalidPaymentProof(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_PAYMENT_PROOF"


class PaymentOrderMismatch(BookingError):
    """The paid order was not issued for this appointment. The hold is left alone."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ORDER_MISMATCH"


class GatewayNotConfigured(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "GATEWAY_NOT_CONFIGURED"


class GatewayError(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "GATEWAY_ERROR"


class WebhookSignatureError(Exception):
    """Raised when a webhook cannot be authenticated. Never rendered with details."""
