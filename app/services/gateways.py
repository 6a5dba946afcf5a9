"""Payment gateway adapters.

Two providers sit behind one interface: Razorpay (REST over httpx) and Stripe
(official SDK, async methods). Adapters are cheap wrappers around a clinic's
stored credentials; the registry owns the shared HTTP client and is built once
at startup.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional
from uuid import UUID

import httpx
import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    GatewayError,
    GatewayNotConfigured,
    InvalidPaymentProof,
    PaymentOrderMismatch,
    WebhookSignatureError,
)
from app.models.appointment import Appointment
from app.models.payment_gateway import ClinicGateway, Provider
from app.services import holds

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal | int | float) -> int:
    """Rupees/dollars to paise/cents."""
    value = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(value)


def hmac_sha256(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


@dataclass
class GatewayOrder:
    provider: Provider
    order_id: str
    amount: int  # minor units
    currency: str
    key_id: Optional[str] = None
    checkout_url: Optional[str] = None

    def client_params(self) -> dict[str, Any]:
        """Parameters the frontend needs to open checkout."""
        if self.provider == Provider.STRIPE:
            return {"sessionId": self.order_id, "checkoutUrl": self.checkout_url}
        return {
            "orderId": self.order_id,
            "orderAmount": self.amount,
            "currency": self.currency,
            "keyId": self.key_id,
        }


@dataclass
class WebhookEvent:
    provider: Provider
    event_type: str
    paid: bool
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    appointment_ref: Optional[str] = None
    amount: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    provider: Provider

    def __init__(self, credentials: ClinicGateway, http: httpx.AsyncClient):
        self.credentials = credentials
        self.http = http

    @property
    def gateway_id(self) -> UUID:
        return self.credentials.id

    @abstractmethod
    async def create_order(
        self,
        *,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: dict[str, str],
        description: str = "Clinic appointment",
    ) -> GatewayOrder:
        ...

    @abstractmethod
    async def verify_payment(self, appointment: Appointment, proof: Mapping[str, Any]) -> str:
        """Check the client-supplied proof. Returns the gateway transaction id."""

    @classmethod
    @abstractmethod
    def parse_webhook(cls, raw_body: bytes, headers: Mapping[str, str], secret: str) -> WebhookEvent:
        ...


class RazorpayGateway(GatewayAdapter):
    provider = Provider.RAZORPAY
    PAID_EVENTS = ("payment.captured", "order.paid")

    async def create_order(self, *, amount, currency, receipt, metadata, description="Clinic appointment"):
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt[:40],
            "notes": metadata,
        }
        try:
            response = await self.http.post(
                f"{settings.RAZORPAY_API_BASE}/orders",
                json=payload,
                auth=(self.credentials.api_key, self.credentials.secret),
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Razorpay order creation failed (%s): %s", e.response.status_code, e.response.text)
            raise GatewayError("Payment gateway rejected the order")
        except httpx.HTTPError as e:
            logger.error("Razorpay unreachable: %s", e)
            raise GatewayError("Payment gateway unavailable")

        data = response.json()
        logger.info("Created Razorpay order %s for receipt %s", data["id"], receipt)
        return GatewayOrder(
            provider=self.provider,
            order_id=data["id"],
            amount=data.get("amount", payload["amount"]),
            currency=data.get("currency", currency),
            key_id=self.credentials.api_key,
        )

    async def verify_payment(self, appointment, proof):
        order_id = proof.get("razorpay_order_id")
        payment_id = proof.get("razorpay_payment_id")
        signature = proof.get("razorpay_signature")
        if not order_id or not payment_id or not signature:
            raise InvalidPaymentProof("Missing Razorpay payment details")
        expected = hmac_sha256(self.credentials.secret, f"{order_id}|{payment_id}")
        if not hmac.compare_digest(expected, signature):
            logger.warning("Razorpay signature mismatch for appointment %s", appointment.id)
            raise InvalidPaymentProof("Invalid payment signature")

        if order_id != appointment.order_id:
            notes = await self.fetch_order_notes(order_id)
            if not holds.order_belongs_to(appointment, order_id, notes):
                logger.warning("Razorpay order %s was not issued for appointment %s", order_id, appointment.id)
                raise PaymentOrderMismatch("Order does not belong to this appointment")
        return payment_id

    async def fetch_order_notes(self, order_id: str) -> dict:
        try:
            response = await self.http.get(
                f"{settings.RAZORPAY_API_BASE}/orders/{order_id}",
                auth=(self.credentials.api_key, self.credentials.secret),
            )
            if response.status_code == 404:
                return {}
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Razorpay order lookup failed for %s: %s", order_id, e)
            raise GatewayError("Could not verify payment with the gateway")

        notes = response.json().get("notes") or {}
        return notes if isinstance(notes, dict) else {}

    @classmethod
    def parse_webhook(cls, raw_body, headers, secret):
        signature = headers.get("x-razorpay-signature")
        if not signature or not secret:
            raise WebhookSignatureError("missing signature")
        if not hmac.compare_digest(hmac_sha256(secret, raw_body), signature):
            raise WebhookSignatureError("bad signature")

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise WebhookSignatureError("unparseable body")

        event_type = body.get("event", "")
        payload = body.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}
        notes = payment.get("notes") or order.get("notes") or {}
        if not isinstance(notes, dict):
            notes = {}

        return WebhookEvent(
            provider=cls.provider,
            event_type=event_type,
            paid=event_type in cls.PAID_EVENTS,
            order_id=payment.get("order_id") or order.get("id"),
            payment_id=payment.get("id"),
            appointment_ref=notes.get("appointment_ref"),
            amount=payment.get("amount") or order.get("amount_paid"),
            metadata=notes,
        )


class StripeGateway(GatewayAdapter):
    provider = Provider.STRIPE
    PAID_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")

    async def create_order(self, *, amount, currency, receipt, metadata, description="Clinic appointment"):
        try:
            session = await stripe.checkout.Session.create_async(
                api_key=self.credentials.secret,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": to_minor_units(amount),
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }],
                client_reference_id=receipt,
                metadata=metadata,
                success_url=f"{settings.FRONTEND_URL}/booking/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.FRONTEND_URL}/booking/cancelled",
            )
        except stripe.StripeError as e:
            logger.error("Stripe error creating checkout session: %s", e)
            raise GatewayError("Payment gateway rejected the checkout session")

        logger.info("Created Stripe checkout session %s for receipt %s", session.id, receipt)
        return GatewayOrder(
            provider=self.provider,
            order_id=session.id,
            amount=to_minor_units(amount),
            currency=currency,
            checkout_url=session.url,
        )

    async def verify_payment(self, appointment, proof):
        session_id = proof.get("session_id")
        if not session_id:
            raise InvalidPaymentProof("Missing Stripe session id")

        try:
            session = await stripe.checkout.Session.retrieve_async(session_id, api_key=self.credentials.secret)
        except stripe.InvalidRequestError:
            logger.warning("Stripe session %s not found for appointment %s", session_id, appointment.id)
            raise PaymentOrderMismatch("Session does not belong to this appointment")
        except stripe.StripeError as e:
            logger.error("Stripe error retrieving session %s: %s", session_id, e)
            raise GatewayError("Could not verify payment with the gateway")

        if session_id != appointment.order_id:
            metadata = dict(session.metadata or {})
            if not holds.order_belongs_to(appointment, session_id, metadata):
                logger.warning("Stripe session %s was not issued for appointment %s", session_id, appointment.id)
                raise PaymentOrderMismatch("Session does not belong to this appointment")

        if session.payment_status != "paid":
            logger.warning("Stripe session %s not paid (status=%s)", session_id, session.payment_status)
            raise InvalidPaymentProof("Payment not completed")
        return session.payment_intent or session.id

    @classmethod
    def parse_webhook(cls, raw_body, headers, secret):
        signature = headers.get("stripe-signature")
        if not signature or not secret:
            raise WebhookSignatureError("missing signature")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, secret)
        except (ValueError, stripe.SignatureVerificationError):
            raise WebhookSignatureError("bad signature")

        event_type = event["type"]
        session = event["data"]["object"]
        metadata = dict(session.get("metadata") or {})
        return WebhookEvent(
            provider=cls.provider,
            event_type=event_type,
            paid=event_type in cls.PAID_EVENTS and session.get("payment_status") == "paid",
            order_id=session.get("id"),
            payment_id=session.get("payment_intent") or session.get("id"),
            appointment_ref=metadata.get("appointment_ref") or session.get("client_reference_id"),
            amount=session.get("amount_total"),
            metadata=metadata,
        )


ADAPTERS: dict[Provider, type[GatewayAdapter]] = {
    Provider.RAZORPAY: RazorpayGateway,
    Provider.STRIPE: StripeGateway,
}


def parse_provider(value: str) -> Provider:
    try:
        return Provider(value.upper())
    except ValueError:
        raise GatewayNotConfigured(f"Unsupported payment provider: {value}")


class GatewayRegistry:
    """Resolves per-clinic gateway credentials into adapters."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http = http_client or httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)

    async def for_clinic(self, db: AsyncSession, clinic_id: UUID, provider: Provider | str) -> GatewayAdapter:
        if isinstance(provider, str):
            provider = parse_provider(provider)
        result = await db.execute(
            select(ClinicGateway).where(
                ClinicGateway.clinic_id == clinic_id,
                ClinicGateway.name == provider.value,
                ClinicGateway.is_active.is_(True),
            )
        )
        credentials = result.scalar_one_or_none()
        if not credentials or not credentials.api_key or not credentials.secret:
            logger.error("No active %s gateway for clinic %s", provider.value, clinic_id)
            raise GatewayNotConfigured(f"{provider.value.title()} is not configured for this clinic")
        return ADAPTERS[provider](credentials, self.http)

    async def webhook_secret(self, db: AsyncSession, provider: Provider, clinic_id: Optional[UUID] = None) -> str:
        if clinic_id is None:
            if provider == Provider.STRIPE:
                return settings.STRIPE_WEBHOOK_SECRET
            return settings.RAZORPAY_WEBHOOK_SECRET

        result = await db.execute(
            select(ClinicGateway.webhook_secret).where(
                ClinicGateway.clinic_id == clinic_id,
                ClinicGateway.name == provider.value,
                ClinicGateway.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none() or ""

    def parse_webhook(self, provider: Provider, raw_body: bytes, headers: Mapping[str, str], secret: str) -> WebhookEvent:
        return ADAPTERS[provider].parse_webhook(raw_body, headers, secret)

    async def aclose(self) -> None:
        await self.http.aclose()
