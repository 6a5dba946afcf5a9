"""Hold manager.

A hold is an appointment in PENDING_PAYMENT whose deadline has not passed, or a
confirmed appointment with a reschedule awaiting payment for a slot. Every
reader decides "is this hold live?" through ``hold_expires_at`` so the booking
path, the webhook path and the sweeper never disagree.

Callers must lock the slot row (``lock_slot``) before asking for a decision.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus, LIVE_STATUSES
from app.models.slot import Slot, SlotStatus
from app.services import ledger
from app.utils import clock

logger = logging.getLogger(__name__)


class HoldAction(str, enum.Enum):
    CREATE = "CREATE"
    REFRESH = "REFRESH"
    REJECT = "REJECT"


class RejectReason(str, enum.Enum):
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    SLOT_BLOCKED = "SLOT_BLOCKED"


@dataclass
class HoldDecision:
    action: HoldAction
    appointment: Optional[Appointment] = None
    reason: Optional[RejectReason] = None

    @property
    def rejected(self) -> bool:
        return self.action == HoldAction.REJECT


def hold_expires_at(appointment: Appointment) -> datetime:
    if appointment.payment_expiry is not None:
        return appointment.payment_expiry
    return appointment.created_at + clock.ms(settings.HOLD_MS)


def grace_deadline(appointment: Appointment) -> datetime:
    """Last moment a late gateway confirmation is still accepted for this hold."""
    return hold_expires_at(appointment) + clock.ms(max(settings.SAFETY_MS - settings.HOLD_MS, 0))


def is_hold_active(appointment: Appointment, now: datetime) -> bool:
    if appointment.deleted_at is not None:
        return False
    if appointment.status == AppointmentStatus.PENDING_PAYMENT:
        return now < hold_expires_at(appointment)
    if appointment.pending_slot_id is not None:
        return now < hold_expires_at(appointment)
    return False


def is_reusable(appointment: Appointment, now: datetime) -> bool:
    """An expired hold row may be recycled once the late-webhook window is over."""
    start = hold_expires_at(appointment) - clock.ms(settings.HOLD_MS)
    return now - start >= clock.ms(settings.SAFETY_MS)


def order_belongs_to(appointment: Appointment, order_id: Optional[str], notes: Optional[dict]) -> bool:
    """Was this gateway order issued for the appointment's current payment?

    A refreshed hold (or a repeated reschedule request) gets a new order, so the
    latest ``order_id`` is not the only valid one. Older orders are recognised by
    the ``appointment_ref`` we put in their notes/metadata.
    """
    if order_id and order_id == appointment.order_id:
        return True
    notes = notes or {}
    if notes.get("appointment_ref") != str(appointment.id):
        return False
    if appointment.pending_slot_id is not None:
        return notes.get("type") == "RESCHEDULE" and notes.get("slot_id") == str(appointment.pending_slot_id)
    return notes.get("type", "BOOKING") == "BOOKING"


async def lock_slot(db: AsyncSession, slot_id: UUID) -> Optional[Slot]:
    """SELECT ... FOR UPDATE on a slot row. Serializes every writer for the slot."""
    result = await db.execute(
        select(Slot)
        .where(Slot.id == slot_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_slots(db: AsyncSession, *slot_ids: UUID) -> dict[UUID, Optional[Slot]]:
    """Lock several slots in a stable order so two writers never deadlock."""
    locked = {}
    for slot_id in sorted(set(slot_ids), key=str):
        locked[slot_id] = await lock_slot(db, slot_id)
    return locked


async def slot_appointments(db: AsyncSession, slot_id: UUID) -> list[Appointment]:
    """Live appointments occupying or targeting the slot."""
    result = await db.execute(
        select(Appointment)
        .where(
            Appointment.deleted_at.is_(None),
            or_(
                Appointment.slot_id == slot_id,
                Appointment.pending_slot_id == slot_id,
            ),
            Appointment.status.in_(list(LIVE_STATUSES)),
        )
        .order_by(Appointment.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def confirmed_on(rows: list[Appointment], slot_id: UUID) -> Optional[Appointment]:
    for appt in rows:
        if appt.slot_id == slot_id and appt.status == AppointmentStatus.CONFIRMED:
            return appt
    return None


def live_holds_on(rows: list[Appointment], slot_id: UUID, now: datetime) -> list[Appointment]:
    holds = []
    for appt in rows:
        if appt.status == AppointmentStatus.PENDING_PAYMENT and appt.slot_id == slot_id:
            if is_hold_active(appt, now):
                holds.append(appt)
        elif appt.pending_slot_id == slot_id and is_hold_active(appt, now):
            holds.append(appt)
    return holds


async def check_contention(
    db: AsyncSession,
    slot: Slot,
    user_id: UUID,
    now: datetime,
    exclude_id: Optional[UUID] = None,
) -> tuple[Optional[RejectReason], list[Appointment]]:
    """First two hold rules: a confirmation wins, then another user's live hold."""
    rows = [a for a in await slot_appointments(db, slot.id) if a.id != exclude_id]
    confirmed = confirmed_on(rows, slot.id)
    if confirmed is not None:
        return RejectReason.ALREADY_CONFIRMED, rows

    for hold in live_holds_on(rows, slot.id, now):
        if hold.user_id != user_id or hold.pending_slot_id == slot.id:
            return RejectReason.SLOT_BLOCKED, rows
    return None, rows


async def acquire_or_refresh_hold(
    db: AsyncSession,
    slot: Slot,
    user_id: UUID,
    now: datetime,
) -> HoldDecision:
    """Decide CREATE / REFRESH / REJECT for a user's online booking on a locked slot."""
    reason, rows = await check_contention(db, slot, user_id, now)
    if reason is not None:
        logger.warning("Hold REJECT slot=%s user=%s reason=%s", slot.id, user_id, reason.value)
        return HoldDecision(HoldAction.REJECT, reason=reason)

    expiry = now + clock.ms(settings.HOLD_MS)

    own = [
        a for a in rows
        if a.user_id == user_id and a.slot_id == slot.id and a.status == AppointmentStatus.PENDING_PAYMENT
    ]
    live = [a for a in own if is_hold_active(a, now)]
    if live:
        appointment = live[0]
        refreshed = await ledger.transition(
            db,
            appointment.id,
            AppointmentStatus.PENDING_PAYMENT,
            payment_expiry=expiry,
            payment_status=PaymentStatus.PENDING,
        )
        if not refreshed:
            raise RuntimeError(f"Hold {appointment.id} changed under slot lock")
        logger.info("Hold REFRESH appointment=%s slot=%s expires=%s", appointment.id, slot.id, expiry.isoformat())
        return HoldDecision(HoldAction.REFRESH, appointment=appointment)

    stale = [a for a in own if is_reusable(a, now)]
    if stale:
        appointment = stale[0]
        await ledger.transition(
            db,
            appointment.id,
            AppointmentStatus.PENDING_PAYMENT,
            payment_expiry=expiry,
            payment_status=PaymentStatus.PENDING,
            amount=slot.price,
            order_id=None,
            payment_id=None,
            provider=None,
            created_at=now,
        )
        logger.info("Hold CREATE (reused row) appointment=%s slot=%s", appointment.id, slot.id)
        return HoldDecision(HoldAction.CREATE, appointment=appointment)

    appointment = Appointment(
        user_id=user_id,
        slot_id=slot.id,
        clinic_id=slot.clinic_id,
        doctor_id=slot.doctor_id,
        status=AppointmentStatus.PENDING_PAYMENT,
        payment_status=PaymentStatus.PENDING,
        amount=slot.price,
        payment_expiry=expiry,
        created_at=now,
        updated_at=now,
    )
    db.add(appointment)
    await db.flush()
    logger.info("Hold CREATE appointment=%s slot=%s expires=%s", appointment.id, slot.id, expiry.isoformat())
    return HoldDecision(HoldAction.CREATE, appointment=appointment)


def block_slot(slot: Slot) -> None:
    slot.status = SlotStatus.PENDING_PAYMENT
    slot.is_blocked = True


def occupy_slot(slot: Slot) -> None:
    slot.status = SlotStatus.CONFIRMED
    slot.is_blocked = False


async def release_slot(db: AsyncSession, slot: Slot, now: datetime) -> None:
    """Recompute a locked slot's availability mirror from its live appointments."""
    rows = await slot_appointments(db, slot.id)
    if confirmed_on(rows, slot.id) is not None:
        occupy_slot(slot)
    elif live_holds_on(rows, slot.id, now):
        block_slot(slot)
    else:
        slot.status = SlotStatus.PENDING
        slot.is_blocked = False
