"""Webhook reconciler: asynchronous payment confirmations pushed by gateways.

Gateways retry on any non-2xx response, so only two situations answer with an
error: an unauthenticated message (400) and an unexpected processing failure
(500, worth retrying). Everything else, including replays and payments for
bookings that legitimately expired, is acknowledged with 200.
"""

import enum
import logging
from typing import Mapping, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import GatewayNotConfigured, WebhookSignatureError
from app.models.appointment import Appointment, AppointmentStatus
from app.models.payment_gateway import Provider
from app.services import holds
from app.services.audit_service import AuditLogger, gateway_actor
from app.services.confirmation import FinalizeOutcome, finalize_payment, payment_exists
from app.services.gateways import GatewayRegistry, WebhookEvent
from app.services.notification_service import BookingEvent, Notifier
from app.utils import clock

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


def _parse_ref(value: Optional[str]) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


async def _correlate(db: AsyncSession, event: WebhookEvent) -> Optional[Appointment]:
    """Find the appointment by gateway order id, else by the reference we put in metadata."""
    if event.order_id:
        result = await db.execute(
            select(Appointment)
            .where(Appointment.order_id == event.order_id, Appointment.deleted_at.is_(None))
            .order_by(Appointment.created_at.desc())
        )
        appointment = result.scalars().first()
        if appointment is not None:
            return appointment

    ref = _parse_ref(event.appointment_ref)
    if ref is None:
        return None
    result = await db.execute(
        select(Appointment).where(Appointment.id == ref, Appointment.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


def _awaiting_this_payment(appointment: Appointment, event: WebhookEvent, now) -> bool:
    """Still pending on an order issued for it, and inside the late-delivery grace window.

    The same ownership rule guards synchronous verification, so both paths
    accept exactly the same orders.
    """
    if appointment.status != AppointmentStatus.PENDING_PAYMENT and appointment.pending_slot_id is None:
        return False
    if not holds.order_belongs_to(appointment, event.order_id, event.metadata):
        return False
    return now < holds.grace_deadline(appointment)


async def reconcile_webhook(
    db: AsyncSession,
    *,
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    clinic_id: Optional[UUID],
    gateways: GatewayRegistry,
    notifier: Notifier,
    auditor: AuditLogger,
) -> WebhookOutcome:
    """Authenticate, correlate and apply one gateway event. Raises WebhookSignatureError on a bad signature."""
    try:
        provider_enum = Provider(provider.upper())
    except ValueError:
        raise WebhookSignatureError(f"unknown provider {provider}")

    secret = await gateways.webhook_secret(db, provider_enum, clinic_id)
    event = gateways.parse_webhook(provider_enum, raw_body, headers, secret)
    logger.info(
        "%s webhook %s order=%s payment=%s",
        provider_enum.value, event.event_type, event.order_id, event.payment_id,
    )

    if not event.paid or not event.payment_id:
        logger.info("Ignoring %s event %s", provider_enum.value, event.event_type)
        return WebhookOutcome.IGNORED

    now = clock.utcnow()
    actor = gateway_actor(provider_enum.value)

    if await payment_exists(db, event.payment_id):
        logger.info("Duplicate webhook for payment %s", event.payment_id)
        return WebhookOutcome.DUPLICATE

    appointment = await _correlate(db, event)
    if appointment is None:
        logger.warning("No appointment for %s order=%s ref=%s", provider_enum.value, event.order_id, event.appointment_ref)
        return WebhookOutcome.IGNORED

    if appointment.status == AppointmentStatus.CONFIRMED and appointment.payment_id == event.payment_id:
        return WebhookOutcome.DUPLICATE

    if not _awaiting_this_payment(appointment, event, now):
        logger.warning(
            "Payment %s arrived for appointment %s outside its hold (status=%s); manual refund required",
            event.payment_id, appointment.id, appointment.status.value,
        )
        auditor.record(
            "PAYMENT_AFTER_EXPIRY",
            actor,
            f"appointment:{appointment.id}",
            {"transaction_id": event.payment_id, "order_id": event.order_id},
        )
        return WebhookOutcome.IGNORED

    gateway_id = None
    try:
        gateway = await gateways.for_clinic(db, appointment.clinic_id, provider_enum)
        gateway_id = gateway.gateway_id
    except GatewayNotConfigured:
        logger.warning("Clinic %s has no active %s gateway on file", appointment.clinic_id, provider_enum.value)

    result = await finalize_payment(
        db,
        appointment.id,
        provider=provider_enum.value,
        transaction_id=event.payment_id,
        order_id=event.order_id,
        gateway_id=gateway_id,
        now=now,
        auditor=auditor,
    )
    await db.commit()

    if result.outcome == FinalizeOutcome.DUPLICATE:
        return WebhookOutcome.DUPLICATE
    if not result.applied:
        if result.appointment is not None and result.appointment.payment_id == event.payment_id:
            return WebhookOutcome.DUPLICATE
        logger.info("Webhook for appointment %s not applied (%s)", appointment.id, result.outcome.value)
        return WebhookOutcome.IGNORED

    event_kind = BookingEvent.RESCHEDULED if result.outcome == FinalizeOutcome.RESCHEDULED else BookingEvent.CONFIRMED
    notifier.notify(event_kind, {"appointment_id": str(appointment.id)})
    auditor.record(
        "PAYMENT_RECONCILED",
        actor,
        f"appointment:{appointment.id}",
        {"transaction_id": event.payment_id, "order_id": event.order_id, "outcome": result.outcome.value},
    )
    return WebhookOutcome.PROCESSED
