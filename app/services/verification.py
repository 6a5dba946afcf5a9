"""Synchronous payment verification, called by the client after checkout."""

import logging
from typing import Any, Dict, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    BookingExpired,
    InvalidPaymentProof,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OnlinePaymentsDisabled,
    PaymentOrderMismatch,
)
from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from app.models.user import User
from app.services import holds, ledger
from app.services.audit_service import AuditLogger
from app.services.booking import get_owned_appointment
from app.services.confirmation import FinalizeOutcome, finalize_payment
from app.services.gateways import GatewayRegistry
from app.services.notification_service import BookingEvent, Notifier
from app.services.plans import OFFLINE_MODES, allows_online_payments, get_plan_for_clinic
from app.utils import clock

logger = logging.getLogger(__name__)


def _confirmed_response(appointment: Appointment, already: bool) -> Dict[str, Any]:
    return {
        "appointmentId": str(appointment.id),
        "status": AppointmentStatus.CONFIRMED.value,
        "paymentStatus": PaymentStatus.PAID.value,
        "alreadyConfirmed": already,
        "message": "Appointment confirmed",
    }


async def _fail_attempt(db: AsyncSession, appointment: Appointment, now, reschedule: bool) -> None:
    """Abandon the pending payment: drop a pending reschedule, or cancel the hold."""
    if reschedule:
        pending_slot_id = appointment.pending_slot_id
        await ledger.amend(
            db,
            Appointment.id == appointment.id,
            Appointment.pending_slot_id == pending_slot_id,
            pending_slot_id=None,
            reschedule_amount=None,
            payment_expiry=None,
        )
        await db.flush()
        slot = await holds.lock_slot(db, pending_slot_id)
    else:
        await ledger.transition(
            db, appointment.id, AppointmentStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
        )
        await db.flush()
        slot = await holds.lock_slot(db, appointment.slot_id)
    if slot is not None:
        await holds.release_slot(db, slot, now)
    await db.commit()


async def verify_payment(
    db: AsyncSession,
    *,
    appointment_id: UUID,
    user: User,
    proof: Mapping[str, Any],
    gateways: GatewayRegistry,
    notifier: Notifier,
    auditor: AuditLogger,
) -> Dict[str, Any]:
    now = clock.utcnow()
    try:
        appointment = await get_owned_appointment(db, appointment_id, user)
    except NotAuthorized:
        # Another patient's appointment is reported as missing
        raise NotFound("Appointment not found")

    reschedule = appointment.pending_slot_id is not None
    if reschedule:
        await holds.lock_slots(db, appointment.slot_id, appointment.pending_slot_id)
    else:
        await holds.lock_slot(db, appointment.slot_id)
    await db.refresh(appointment)

    if not reschedule:
        if appointment.status == AppointmentStatus.CONFIRMED:
            return _confirmed_response(appointment, already=True)
        if appointment.status == AppointmentStatus.CANCELLED:
            raise BookingExpired("This booking has expired. Please book again.")
        if appointment.status != AppointmentStatus.PENDING_PAYMENT:
            raise InvalidTransition(
                "This appointment is not awaiting payment",
                status=appointment.status.value,
            )

    if now >= holds.hold_expires_at(appointment):
        logger.warning("Verification for appointment %s after hold expiry", appointment.id)
        await _fail_attempt(db, appointment, now, reschedule)
        auditor.record("PAYMENT_EXPIRED", str(user.id), f"appointment:{appointment.id}", {"reschedule": reschedule})
        raise BookingExpired("Payment window has expired. Please book again.")

    plan = await get_plan_for_clinic(db, appointment.clinic_id)
    if not allows_online_payments(plan):
        raise OnlinePaymentsDisabled(
            "Online payments are no longer available for this clinic",
            availableModes=OFFLINE_MODES,
        )

    gateway = await gateways.for_clinic(db, appointment.clinic_id, appointment.provider)
    try:
        transaction_id = await gateway.verify_payment(appointment, proof)
    except InvalidPaymentProof:
        await _fail_attempt(db, appointment, now, reschedule)
        auditor.record("PAYMENT_VERIFICATION_FAILED", str(user.id), f"appointment:{appointment.id}", {"reschedule": reschedule})
        raise
    except PaymentOrderMismatch:
        logger.warning("Proof for appointment %s names an order not issued for it", appointment.id)
        auditor.record(
            "PAYMENT_ORDER_MISMATCH",
            str(user.id),
            f"appointment:{appointment.id}",
            {"order_id": proof.get("razorpay_order_id") or proof.get("session_id")},
        )
        raise

    result = await finalize_payment(
        db,
        appointment.id,
        provider=gateway.provider.value,
        transaction_id=transaction_id,
        order_id=appointment.order_id,
        gateway_id=gateway.gateway_id,
        now=now,
        auditor=auditor,
    )
    await db.commit()

    if result.outcome == FinalizeOutcome.SUPERSEDED:
        raise BookingExpired("This slot was booked by someone else. Your payment will be refunded.")
    if result.outcome == FinalizeOutcome.NOOP:
        raise InvalidTransition("This appointment is no longer awaiting payment")

    applied = result.applied
    if applied:
        event = BookingEvent.RESCHEDULED if result.outcome == FinalizeOutcome.RESCHEDULED else BookingEvent.CONFIRMED
        notifier.notify(event, {"appointment_id": str(appointment.id)})
        auditor.record(
            "PAYMENT_VERIFIED",
            str(user.id),
            f"appointment:{appointment.id}",
            {"transaction_id": transaction_id, "outcome": result.outcome.value},
        )

    response = _confirmed_response(result.appointment, already=not applied)
    if result.outcome == FinalizeOutcome.RESCHEDULED:
        response["rescheduled"] = True
        response["slotId"] = str(result.appointment.slot_id)
    return response
