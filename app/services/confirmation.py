"""Terminal payment transition shared by sync verification and webhooks.

Whichever path gets here first confirms the booking. The other finds the
guard no longer matching and reports a no-op or duplicate. The Payment row is
keyed by the gateway transaction id, so replays never add a second row.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from app.models.payment import Payment
from app.services import holds, ledger
from app.services.audit_service import SYSTEM_ACTOR, AuditLogger

logger = logging.getLogger(__name__)


class FinalizeOutcome(str, enum.Enum):
    CONFIRMED = "CONFIRMED"
    RESCHEDULED = "RESCHEDULED"
    DUPLICATE = "DUPLICATE"
    NOOP = "NOOP"
    SUPERSEDED = "SUPERSEDED"


@dataclass
class FinalizeResult:
    outcome: FinalizeOutcome
    appointment: Optional[Appointment]

    @property
    def applied(self) -> bool:
        return self.outcome in (FinalizeOutcome.CONFIRMED, FinalizeOutcome.RESCHEDULED)


async def payment_exists(db: AsyncSession, gateway_ref_id: str) -> bool:
    result = await db.execute(select(Payment.id).where(Payment.gateway_ref_id == gateway_ref_id))
    return result.first() is not None


async def _record_payment(
    db: AsyncSession,
    appointment: Appointment,
    *,
    provider: str,
    transaction_id: str,
    amount,
    gateway_id: Optional[UUID],
    now: datetime,
) -> bool:
    if await payment_exists(db, transaction_id):
        logger.info("Payment %s already recorded", transaction_id)
        return False
    db.add(Payment(
        appointment_id=appointment.id,
        clinic_id=appointment.clinic_id,
        doctor_id=appointment.doctor_id,
        gateway_id=gateway_id,
        provider=provider,
        amount=amount,
        status=PaymentStatus.PAID,
        gateway_ref_id=transaction_id,
        created_at=now,
    ))
    return True


async def _load(db: AsyncSession, appointment_id: UUID) -> Optional[Appointment]:
    result = await db.execute(
        select(Appointment)
        .where(Appointment.id == appointment_id, Appointment.deleted_at.is_(None))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def finalize_payment(
    db: AsyncSession,
    appointment_id: UUID,
    *,
    provider: str,
    transaction_id: str,
    order_id: Optional[str],
    gateway_id: Optional[UUID],
    now: datetime,
    auditor: Optional[AuditLogger] = None,
) -> FinalizeResult:
    """Apply a successful payment to an appointment. Caller commits."""
    appointment = await _load(db, appointment_id)
    if appointment is None:
        return FinalizeResult(FinalizeOutcome.NOOP, None)

    if appointment.pending_slot_id is not None:
        await holds.lock_slots(db, appointment.slot_id, appointment.pending_slot_id)
    else:
        await holds.lock_slot(db, appointment.slot_id)

    # Re-read under the lock; another writer may have moved it meanwhile
    appointment = await _load(db, appointment_id)
    if appointment is None:
        return FinalizeResult(FinalizeOutcome.NOOP, None)
    if appointment.payment_id == transaction_id or await payment_exists(db, transaction_id):
        logger.info("Payment %s for appointment %s already applied", transaction_id, appointment_id)
        return FinalizeResult(FinalizeOutcome.DUPLICATE, appointment)
    logger.info("Applying payment %s (order %s) to appointment %s", transaction_id, order_id, appointment_id)

    if appointment.pending_slot_id is not None:
        return await _finalize_reschedule(
            db, appointment,
            provider=provider, transaction_id=transaction_id,
            gateway_id=gateway_id, now=now, auditor=auditor,
        )
    return await _finalize_booking(
        db, appointment,
        provider=provider, transaction_id=transaction_id,
        gateway_id=gateway_id, now=now, auditor=auditor,
    )


def _rival_claim(rows: list[Appointment], appointment: Appointment, slot_id: UUID, now: datetime) -> Optional[str]:
    """Why the slot can no longer go to ``appointment``, or None if it still can.

    A confirmation always wins. Once the payer's own hold has lapsed, a live
    hold taken by someone else in the meantime wins too.
    """
    others = [a for a in rows if a.id != appointment.id]
    winner = holds.confirmed_on(others, slot_id)
    if winner is not None:
        return f"slot already confirmed for {winner.id}"
    if now >= holds.hold_expires_at(appointment):
        for hold in holds.live_holds_on(others, slot_id, now):
            return f"hold expired and slot now held by {hold.id}"
    return None


async def _finalize_booking(db, appointment, *, provider, transaction_id, gateway_id, now, auditor):
    slot = await holds.lock_slot(db, appointment.slot_id)
    if appointment.status not in (AppointmentStatus.PENDING_PAYMENT, AppointmentStatus.PENDING):
        if appointment.status == AppointmentStatus.CANCELLED:
            _flag_late_payment(appointment, transaction_id, "appointment already cancelled", auditor)
            return FinalizeResult(FinalizeOutcome.SUPERSEDED, appointment)
        return FinalizeResult(FinalizeOutcome.NOOP, appointment)

    rival = _rival_claim(await holds.slot_appointments(db, slot.id), appointment, slot.id, now)
    if rival is not None:
        await ledger.transition(
            db, appointment.id, AppointmentStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
        )
        await db.flush()
        await holds.release_slot(db, slot, now)
        _flag_late_payment(appointment, transaction_id, rival, auditor)
        return FinalizeResult(FinalizeOutcome.SUPERSEDED, appointment)

    confirmed = await ledger.transition(
        db, appointment.id, AppointmentStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        payment_id=transaction_id,
        provider=provider,
    )
    if not confirmed:
        current = await _load(db, appointment.id)
        if current is not None and current.payment_id == transaction_id:
            return FinalizeResult(FinalizeOutcome.DUPLICATE, current)
        return FinalizeResult(FinalizeOutcome.NOOP, appointment)

    holds.occupy_slot(slot)
    await _record_payment(
        db, appointment,
        provider=provider, transaction_id=transaction_id,
        amount=appointment.amount, gateway_id=gateway_id, now=now,
    )
    await db.flush()
    logger.info("Appointment %s CONFIRMED via %s payment %s", appointment.id, provider, transaction_id)
    return FinalizeResult(FinalizeOutcome.CONFIRMED, appointment)


async def _finalize_reschedule(db, appointment, *, provider, transaction_id, gateway_id, now, auditor):
    old_slot_id = appointment.slot_id
    new_slot_id = appointment.pending_slot_id
    slots = await holds.lock_slots(db, old_slot_id, new_slot_id)
    old_slot, new_slot = slots[old_slot_id], slots[new_slot_id]

    rival = _rival_claim(await holds.slot_appointments(db, new_slot_id), appointment, new_slot_id, now)
    if rival is not None:
        await ledger.amend(
            db, Appointment.id == appointment.id,
            pending_slot_id=None, reschedule_amount=None, payment_expiry=None,
        )
        await holds.release_slot(db, new_slot, now)
        _flag_late_payment(appointment, transaction_id, f"target {rival}", auditor)
        return FinalizeResult(FinalizeOutcome.SUPERSEDED, appointment)

    paid = appointment.reschedule_amount or 0
    moved_values = dict(
        slot_id=new_slot_id,
        amount=new_slot.price,
        payment_status=PaymentStatus.PAID,
        payment_id=transaction_id,
        provider=provider,
        payment_expiry=None,
        pending_slot_id=None,
        reschedule_amount=None,
        reschedule_count=appointment.reschedule_count + 1,
    )
    guard = Appointment.pending_slot_id == new_slot_id
    if appointment.status == AppointmentStatus.PENDING:
        moved = await ledger.transition(db, appointment.id, AppointmentStatus.CONFIRMED, guard, **moved_values)
    elif appointment.status == AppointmentStatus.CONFIRMED:
        moved = await ledger.amend(
            db, Appointment.id == appointment.id, Appointment.status == AppointmentStatus.CONFIRMED, guard,
            **moved_values,
        ) == 1
    else:
        moved = False
    if not moved:
        return FinalizeResult(FinalizeOutcome.NOOP, appointment)

    await db.flush()
    await holds.release_slot(db, old_slot, now)
    holds.occupy_slot(new_slot)
    await _record_payment(
        db, appointment,
        provider=provider, transaction_id=transaction_id,
        amount=paid, gateway_id=gateway_id, now=now,
    )
    await db.flush()
    logger.info(
        "Appointment %s RESCHEDULED %s -> %s via %s payment %s",
        appointment.id, old_slot_id, new_slot_id, provider, transaction_id,
    )
    return FinalizeResult(FinalizeOutcome.RESCHEDULED, appointment)


def _flag_late_payment(appointment: Appointment, transaction_id: str, why: str, auditor: Optional[AuditLogger]) -> None:
    logger.error(
        "Payment %s for appointment %s not applied (%s); manual refund required",
        transaction_id, appointment.id, why,
    )
    if auditor is not None:
        auditor.record(
            "PAYMENT_AFTER_EXPIRY",
            SYSTEM_ACTOR,
            f"appointment:{appointment.id}",
            {"transaction_id": transaction_id, "reason": why},
        )
