"""Expiry sweeper.

Periodic tidy-up of abandoned holds and stale requests. Correctness never
depends on it: the hold manager re-checks expiry on every request. The sweep
keeps availability listings honest and the table small.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import async_session
from app.models.appointment import Appointment, AppointmentStatus, PaymentStatus
from app.models.slot import Slot, SlotStatus
from app.services import holds, ledger
from app.utils import clock

logger = logging.getLogger(__name__)


def _expired(now: datetime):
    """SQL form of ``holds.hold_expires_at(appt) <= now``."""
    return or_(
        and_(Appointment.payment_expiry.is_not(None), Appointment.payment_expiry <= now),
        and_(Appointment.payment_expiry.is_(None), Appointment.created_at <= now - clock.ms(settings.HOLD_MS)),
    )


async def sweep_expired_holds(db: AsyncSession, now: datetime) -> int:
    """Expired PENDING_PAYMENT holds: payment FAILED, deadline pinned, status kept."""
    base = (
        Appointment.status == AppointmentStatus.PENDING_PAYMENT,
        Appointment.payment_status == PaymentStatus.PENDING,
    )
    # Deadline-less rows get one so later readers agree on expiry
    pinned = await ledger.amend(
        db, *base,
        Appointment.payment_expiry.is_(None),
        Appointment.created_at <= now - clock.ms(settings.HOLD_MS),
        payment_status=PaymentStatus.FAILED,
        payment_expiry=now,
    )
    failed = await ledger.amend(
        db, *base,
        Appointment.payment_expiry <= now,
        payment_status=PaymentStatus.FAILED,
    )
    return pinned + failed


async def sweep_stale_pending(db: AsyncSession, now: datetime) -> int:
    """Cancel PENDING requests the clinic never acted on."""
    cutoff = now - timedelta(hours=settings.STALE_PENDING_HOURS)
    result = await db.execute(
        select(Appointment.id, Appointment.payment_status).where(
            Appointment.status == AppointmentStatus.PENDING,
            Appointment.deleted_at.is_(None),
            Appointment.created_at <= cutoff,
        )
    )
    cancelled = 0
    for appointment_id, payment_status in result.all():
        values = {"pending_slot_id": None, "reschedule_amount": None}
        if payment_status == PaymentStatus.PENDING:
            values["payment_status"] = PaymentStatus.FAILED
        if await ledger.transition(
            db, appointment_id, AppointmentStatus.CANCELLED,
            Appointment.created_at <= cutoff,
            **values,
        ):
            cancelled += 1
    return cancelled


async def clear_expired_reschedules(db: AsyncSession, now: datetime) -> int:
    """Drop reschedules whose payment window and late-webhook grace have both passed."""
    grace = clock.ms(max(settings.SAFETY_MS - settings.HOLD_MS, 0))
    return await ledger.amend(
        db,
        Appointment.pending_slot_id.is_not(None),
        Appointment.payment_expiry <= now - grace,
        pending_slot_id=None,
        reschedule_amount=None,
    )


async def release_blocked_slots(db: AsyncSession, now: datetime) -> int:
    """Unblock slots whose holds are all gone."""
    result = await db.execute(
        select(Slot)
        .where(
            Slot.deleted_at.is_(None),
            or_(Slot.is_blocked.is_(True), Slot.status == SlotStatus.PENDING_PAYMENT),
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    released = 0
    for slot in result.scalars().all():
        await holds.release_slot(db, slot, now)
        if not slot.is_blocked:
            released += 1
    return released


async def mark_no_shows(db: AsyncSession, now: datetime) -> int:
    """PENDING/CONFIRMED appointments whose slot started long enough ago become NO_SHOW."""
    grace = timedelta(hours=settings.NO_SHOW_GRACE_HOURS)
    result = await db.execute(
        select(Appointment.id, Slot.date, Slot.time)
        .join(Slot, Slot.id == Appointment.slot_id)
        .where(
            Appointment.deleted_at.is_(None),
            Appointment.status.in_([AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED]),
            Slot.date <= (now - grace).date(),
        )
    )
    marked = 0
    for appointment_id, slot_date, slot_time in result.all():
        if datetime.combine(slot_date, slot_time) + grace > now:
            continue
        if await ledger.transition(db, appointment_id, AppointmentStatus.NO_SHOW):
            marked += 1
    return marked


SWEEPS = (
    ("expired_holds", sweep_expired_holds),
    ("stale_pending", sweep_stale_pending),
    ("expired_reschedules", clear_expired_reschedules),
    ("released_slots", release_blocked_slots),
    ("no_shows", mark_no_shows),
)


async def run_sweep(
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """One pass. Each step commits on its own so one failure does not undo the rest."""
    now = now or clock.utcnow()
    counts: Dict[str, int] = {}
    for name, sweep in SWEEPS:
        async with session_factory() as db:
            try:
                counts[name] = await sweep(db, now)
                await db.commit()
            except Exception:
                await db.rollback()
                logger.exception("Sweep step %s failed", name)
                counts[name] = 0

    if any(counts.values()):
        logger.info("Sweep complete: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
    else:
        logger.debug("Sweep complete: nothing to do")
    return counts


async def run_sweeper_forever(
    interval_seconds: Optional[int] = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
) -> None:
    interval = interval_seconds or settings.SWEEP_INTERVAL_SECONDS
    logger.info("Expiry sweeper started (every %ds)", interval)
    while True:
        try:
            await run_sweep(session_factory)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Sweep pass failed")
        await asyncio.sleep(interval)
