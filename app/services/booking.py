"""Booking orchestrator.

``create_booking`` is the single entry point for reserving a slot. It runs in
one transaction per request: the slot row is locked first, the FREE / OFFLINE /
ONLINE branch decides what to write, and for online slots the gateway order is
created before commit so a gateway failure leaves nothing behind.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AlreadyConfirmed,
    InvalidTransition,
    NoActivePlan,
    NotAuthorized,
    NotFound,
    OnlinePaymentsDisabled,
    PaymentModeMismatch,
    SlotBlocked,
    SlotNotBookable,
    SlotUnavailable,
)
from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from app.models.payment_gateway import Provider
from app.models.slot import Slot, SlotPaymentMode
from app.models.user import User
from app.services import holds, ledger
from app.services.audit_service import AuditLogger
from app.services.gateways import GatewayRegistry
from app.services.notification_service import BookingEvent, Notifier
from app.services.plans import OFFLINE_MODES, get_plan_for_clinic
from app.utils import clock

logger = logging.getLogger(__name__)


def effective_mode(slot: Slot, requested: Optional[SlotPaymentMode]) -> SlotPaymentMode:
    """FREE slots ignore the requested method; paid slots must match it."""
    if slot.payment_mode == SlotPaymentMode.FREE:
        return SlotPaymentMode.FREE
    if requested is None or requested == slot.payment_mode:
        return slot.payment_mode
    raise PaymentModeMismatch(
        f"This slot only accepts {slot.payment_mode.value.lower()} payment",
        slotPaymentMode=slot.payment_mode.value,
    )


def contention_error(reason: holds.RejectReason):
    if reason == holds.RejectReason.ALREADY_CONFIRMED:
        return AlreadyConfirmed("This slot is already booked")
    return SlotBlocked("This slot is being booked by another patient. Please try again in a few minutes.")


async def load_bookable_slot(db: AsyncSession, slot_id: UUID) -> Slot:
    slot = await holds.lock_slot(db, slot_id)
    if slot is None or slot.deleted_at is not None:
        raise NotFound("Slot not found")
    if not slot.is_bookable:
        raise SlotNotBookable("Break slots cannot be booked")
    return slot


async def create_booking(
    db: AsyncSession,
    *,
    slot_id: UUID,
    user: User,
    payment_method: Optional[SlotPaymentMode],
    provider: Provider,
    gateways: GatewayRegistry,
    notifier: Notifier,
    auditor: AuditLogger,
) -> Dict[str, Any]:
    now = clock.utcnow()
    slot = await load_bookable_slot(db, slot_id)
    mode = effective_mode(slot, payment_method)

    plan = await get_plan_for_clinic(db, slot.clinic_id)
    if plan is None:
        raise NoActivePlan("This clinic is not accepting bookings right now")
    if mode == SlotPaymentMode.ONLINE and not plan.allow_online_payments:
        raise OnlinePaymentsDisabled(
            "Online payments are not available for this clinic",
            availableModes=OFFLINE_MODES,
        )

    if mode == SlotPaymentMode.ONLINE:
        response, action = await _book_online(db, slot, user, provider, gateways, now)
    else:
        response, action = await _book_in_person(db, slot, user, mode, now)

    await db.commit()

    appointment_id = response["appointmentId"]
    if mode != SlotPaymentMode.ONLINE:
        notifier.notify(BookingEvent.CREATED, {"appointment_id": appointment_id})
    auditor.record(
        action,
        str(user.id),
        f"appointment:{appointment_id}",
        {"slot_id": str(slot.id), "mode": mode.value},
    )
    return response


async def _book_online(db, slot, user, provider, gateways, now):
    decision = await holds.acquire_or_refresh_hold(db, slot, user.id, now)
    if decision.rejected:
        raise contention_error(decision.reason)

    appointment = decision.appointment
    gateway = await gateways.for_clinic(db, slot.clinic_id, provider)
    order = await gateway.create_order(
        amount=slot.price,
        currency=settings.CURRENCY,
        receipt=str(appointment.id),
        metadata={
            "appointment_ref": str(appointment.id),
            "slot_id": str(slot.id),
            "type": "BOOKING",
        },
    )

    await ledger.amend(
        db,
        Appointment.id == appointment.id,
        Appointment.status == AppointmentStatus.PENDING_PAYMENT,
        order_id=order.order_id,
        provider=provider.value,
    )
    holds.block_slot(slot)
    await db.flush()

    expires_in = int((holds.hold_expires_at(appointment) - now).total_seconds())
    refreshed = decision.action == holds.HoldAction.REFRESH
    logger.info(
        "Online booking %s slot=%s user=%s order=%s expiresIn=%ds",
        decision.action.value, slot.id, user.id, order.order_id, expires_in,
    )
    response = {
        "appointmentId": str(appointment.id),
        "isOnline": True,
        "status": AppointmentStatus.PENDING_PAYMENT.value,
        "provider": provider.value,
        "amount": float(slot.price),
        "expiresIn": expires_in,
        "refreshed": refreshed,
        "message": "Complete payment to confirm your appointment",
        **order.client_params(),
    }
    return response, "HOLD_REFRESHED" if refreshed else "HOLD_CREATED"


async def _book_in_person(db, slot, user, mode, now):
    reason, rows = await holds.check_contention(db, slot, user.id, now)
    if reason == holds.RejectReason.ALREADY_CONFIRMED:
        raise contention_error(reason)

    for appt in rows:
        if appt.user_id != user.id or appt.slot_id != slot.id:
            continue
        if appt.status == AppointmentStatus.PENDING or holds.is_hold_active(appt, now):
            raise SlotUnavailable("You already have a booking for this slot")

    free = mode == SlotPaymentMode.FREE
    appointment = Appointment(
        user_id=user.id,
        slot_id=slot.id,
        clinic_id=slot.clinic_id,
        doctor_id=slot.doctor_id,
        status=AppointmentStatus.PENDING,
        payment_status=PaymentStatus.PAID if free else PaymentStatus.PENDING,
        amount=0 if free else slot.price,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    await db.flush()
    logger.info("%s booking created appointment=%s slot=%s user=%s", mode.value, appointment.id, slot.id, user.id)

    response = {
        "appointmentId": str(appointment.id),
        "isOnline": False,
        "status": appointment.status.value,
        "paymentStatus": appointment.payment_status.value,
        "amount": float(appointment.amount),
        "message": "Appointment requested. The clinic will confirm shortly.",
    }
    return response, "BOOKING_CREATED"


async def get_owned_appointment(db: AsyncSession, appointment_id: UUID, user: User) -> Appointment:
    result = await db.execute(
        select(Appointment).where(Appointment.id == appointment_id, Appointment.deleted_at.is_(None))
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFound("Appointment not found")
    if appointment.user_id != user.id:
        raise NotAuthorized("You can only manage your own appointments")
    return appointment


async def cancel_appointment(
    db: AsyncSession,
    *,
    appointment_id: UUID,
    user: User,
    notifier: Notifier,
    auditor: AuditLogger,
) -> Dict[str, Any]:
    """Owner cancellation. Releases the slot; refunds are handled outside the engine."""
    now = clock.utcnow()
    appointment = await get_owned_appointment(db, appointment_id, user)
    slot_ids = [appointment.slot_id]
    if appointment.pending_slot_id is not None:
        slot_ids.append(appointment.pending_slot_id)
    slots = await holds.lock_slots(db, *slot_ids)

    values = dict(pending_slot_id=None, reschedule_amount=None)
    if appointment.payment_status == PaymentStatus.PENDING:
        values["payment_status"] = PaymentStatus.FAILED
    cancelled = await ledger.transition(db, appointment.id, AppointmentStatus.CANCELLED, **values)
    if not cancelled:
        await db.refresh(appointment)
        raise InvalidTransition(
            f"A {appointment.status.value.lower()} appointment cannot be cancelled",
            status=appointment.status.value,
        )

    await db.flush()
    for slot in slots.values():
        if slot is not None:
            await holds.release_slot(db, slot, now)
    await db.commit()

    logger.info("Appointment %s cancelled by user %s", appointment.id, user.id)
    notifier.notify(BookingEvent.CANCELLED, {"appointment_id": str(appointment.id)})
    auditor.record("APPOINTMENT_CANCELLED", str(user.id), f"appointment:{appointment.id}", {})
    return {
        "appointmentId": str(appointment.id),
        "status": AppointmentStatus.CANCELLED.value,
        "message": "Appointment cancelled",
    }
