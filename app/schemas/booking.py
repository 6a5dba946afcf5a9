"""Request/response schemas for booking, verification and reschedule."""

from typing import Optional
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field

from app.models.payment_gateway import Provider
from app.models.slot import SlotPaymentMode


class BookingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slot_id: UUID = Field(alias="slotId")
    payment_method: Optional[SlotPaymentMode] = Field(default=None, alias="paymentMethod")
    provider: Provider = Provider.RAZORPAY


class PaymentVerify(BaseModel):
    """Client proof after checkout: Razorpay handler fields or a Stripe session id."""
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: UUID = Field(alias="appointmentId")
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    def proof(self) -> dict:
        return {
            "razorpay_order_id": self.razorpay_order_id,
            "razorpay_payment_id": self.razorpay_payment_id,
            "razorpay_signature": self.razorpay_signature,
            "session_id": self.session_id,
        }


class RescheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_slot_id: UUID = Field(alias="newSlotId")
    provider: Provider = Provider.RAZORPAY


class WebhookAck(BaseModel):
    status: str

