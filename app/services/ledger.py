"""Guarded writes to the appointment ledger.

Status changes are conditional UPDATEs: the row only moves if its current
status is one of the allowed predecessors for the target. A zero rowcount means
another writer got there first, and the caller treats it as a no-op.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointment import Appointment, AppointmentStatus, allowed_predecessors
from app.utils import clock

logger = logging.getLogger(__name__)


async def transition(
    db: AsyncSession,
    appointment_id: UUID,
    target: AppointmentStatus,
    *criteria: Any,
    **values: Any,
) -> bool:
    """Move one appointment to ``target`` if it is still in an allowed state.

    Extra ``criteria`` narrow the guard further (e.g. the order id must still
    match). Returns True when the row was updated.
    """
    predecessors = allowed_predecessors(target)
    if not predecessors:
        raise ValueError(f"No transition leads to {target.value}")

    stmt = (
        update(Appointment)
        .where(
            Appointment.id == appointment_id,
            Appointment.deleted_at.is_(None),
            Appointment.status.in_(list(predecessors)),
            *criteria,
        )
        .values(status=target, updated_at=clock.utcnow(), **values)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    moved = result.rowcount == 1
    if not moved:
        logger.info("Transition of appointment %s to %s skipped: guard did not match", appointment_id, target.value)
    return moved


async def amend(db: AsyncSession, *criteria: Any, **values: Any) -> int:
    """Guarded update of non-status booking fields. Returns the affected row count."""
    if "status" in values:
        raise ValueError("Use transition() to change appointment status")
    if not criteria:
        raise ValueError("amend() requires at least one criterion")

    stmt = (
        update(Appointment)
        .where(Appointment.deleted_at.is_(None), *criteria)
        .values(updated_at=clock.utcnow(), **values)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    return result.rowcount
