"""Patient-initiated reschedule to a different slot.

A move that costs nothing extra is applied at once. A move to a pricier online
slot (or from pay-at-clinic to online) needs the difference paid first: the
target slot is held like a booking hold and the move completes when the
payment is confirmed (see ``confirmation.finalize_payment``).
"""

import logging
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import NotFound, OnlinePaymentsDisabled, RescheduleNotAllowed, SlotNotBookable
from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus, TERMINAL_STATUSES
from app.models.payment_gateway import Provider
from app.models.slot import SlotPaymentMode
from app.models.user import User
from app.services import holds, ledger
from app.services.audit_service import AuditLogger
from app.services.booking import contention_error, get_owned_appointment
from app.services.gateways import GatewayRegistry
from app.services.notification_service import BookingEvent, Notifier
from app.services.plans import OFFLINE_MODES, allows_online_payments, get_plan_for_clinic
from app.utils import clock

logger = logging.getLogger(__name__)


def amount_paid(appointment: Appointment) -> Decimal:
    if appointment.payment_status == PaymentStatus.PAID:
        return Decimal(str(appointment.amount or 0))
    return Decimal("0")


async def reschedule_appointment(
    db: AsyncSession,
    *,
    appointment_id: UUID,
    user: User,
    new_slot_id: UUID,
    provider: Provider,
    gateways: GatewayRegistry,
    notifier: Notifier,
    auditor: AuditLogger,
) -> Dict[str, Any]:
    now = clock.utcnow()
    appointment = await get_owned_appointment(db, appointment_id, user)

    if appointment.status in TERMINAL_STATUSES:
        raise RescheduleNotAllowed(f"A {appointment.status.value.lower()} appointment cannot be rescheduled")
    if appointment.status == AppointmentStatus.PENDING_PAYMENT:
        raise RescheduleNotAllowed("Complete the pending payment before rescheduling")
    if appointment.reschedule_count >= settings.MAX_RESCHEDULES:
        raise RescheduleNotAllowed("This appointment has already been rescheduled")
    if new_slot_id == appointment.slot_id:
        raise RescheduleNotAllowed("The appointment is already in this slot")

    old_slot_id = appointment.slot_id
    slots = await holds.lock_slots(db, old_slot_id, new_slot_id)
    await db.refresh(appointment)
    old_slot, new_slot = slots[old_slot_id], slots[new_slot_id]

    if new_slot is None or new_slot.deleted_at is not None:
        raise NotFound("Slot not found")
    if not new_slot.is_bookable:
        raise SlotNotBookable("Break slots cannot be booked")
    if new_slot.clinic_id != appointment.clinic_id:
        raise RescheduleNotAllowed("Appointments can only be moved within the same clinic")

    if appointment.pending_slot_id is not None:
        if holds.is_hold_active(appointment, now) and appointment.pending_slot_id != new_slot_id:
            raise RescheduleNotAllowed("Another reschedule is already awaiting payment")

    reason, _ = await holds.check_contention(db, new_slot, user.id, now, exclude_id=appointment.id)
    if reason is not None:
        raise contention_error(reason)

    paid = amount_paid(appointment)
    new_price = Decimal(str(new_slot.price or 0))
    needs_payment = new_slot.payment_mode == SlotPaymentMode.ONLINE and new_price > paid

    if not needs_payment:
        response = await _move_now(db, appointment, old_slot, new_slot, now)
        await db.commit()
        notifier.notify(BookingEvent.RESCHEDULED, {"appointment_id": str(appointment.id)})
        auditor.record(
            "APPOINTMENT_RESCHEDULED",
            str(user.id),
            f"appointment:{appointment.id}",
            {"from_slot": str(old_slot_id), "to_slot": str(new_slot_id), "paid": False},
        )
        return response

    plan = await get_plan_for_clinic(db, appointment.clinic_id)
    if not allows_online_payments(plan):
        raise OnlinePaymentsDisabled(
            "Online payments are not available for this clinic",
            availableModes=OFFLINE_MODES,
        )

    difference = new_price - paid
    gateway = await gateways.for_clinic(db, appointment.clinic_id, provider)
    order = await gateway.create_order(
        amount=difference,
        currency=settings.CURRENCY,
        receipt=f"rs-{appointment.id}",
        metadata={
            "appointment_ref": str(appointment.id),
            "slot_id": str(new_slot_id),
            "type": "RESCHEDULE",
        },
        description="Appointment reschedule",
    )
    expiry = now + clock.ms(settings.HOLD_MS)
    await ledger.amend(
        db,
        Appointment.id == appointment.id,
        Appointment.status.in_([AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED]),
        order_id=order.order_id,
        provider=provider.value,
        pending_slot_id=new_slot_id,
        reschedule_amount=difference,
        payment_expiry=expiry,
    )
    holds.block_slot(new_slot)
    await db.commit()

    logger.info(
        "Reschedule of %s to slot %s awaiting payment of %s (order %s)",
        appointment.id, new_slot_id, difference, order.order_id,
    )
    auditor.record(
        "RESCHEDULE_PAYMENT_PENDING",
        str(user.id),
        f"appointment:{appointment.id}",
        {"to_slot": str(new_slot_id), "amount": str(difference), "order_id": order.order_id},
    )
    return {
        "appointmentId": str(appointment.id),
        "requiresPayment": True,
        "rescheduled": False,
        "provider": provider.value,
        "amountDue": float(difference),
        "expiresIn": int((expiry - now).total_seconds()),
        "message": "Pay the difference to confirm the new time",
        **order.client_params(),
    }


async def _move_now(db, appointment, old_slot, new_slot, now) -> Dict[str, Any]:
    values = dict(
        slot_id=new_slot.id,
        pending_slot_id=None,
        reschedule_amount=None,
        reschedule_count=appointment.reschedule_count + 1,
    )
    if appointment.payment_status != PaymentStatus.PAID:
        values["amount"] = 0 if new_slot.payment_mode == SlotPaymentMode.FREE else new_slot.price
        if new_slot.payment_mode == SlotPaymentMode.FREE:
            values["payment_status"] = PaymentStatus.PAID

    moved = await ledger.amend(
        db,
        Appointment.id == appointment.id,
        Appointment.slot_id == old_slot.id,
        Appointment.status.in_([AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED]),
        **values,
    )
    if moved != 1:
        raise RescheduleNotAllowed("The appointment changed while rescheduling. Please try again.")
    await db.flush()

    await holds.release_slot(db, old_slot, now)
    if appointment.status == AppointmentStatus.CONFIRMED:
        holds.occupy_slot(new_slot)
    logger.info("Appointment %s moved %s -> %s", appointment.id, old_slot.id, new_slot.id)
    return {
        "appointmentId": str(appointment.id),
        "requiresPayment": False,
        "rescheduled": True,
        "slotId": str(new_slot.id),
        "status": appointment.status.value,
        "message": "Appointment rescheduled",
    }
