"""Patient actions on an existing appointment: reschedule and cancel."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_auditor, get_current_user, get_gateways, get_notifier
from app.models.user import User
from app.schemas.booking import RescheduleRequest
from app.services.audit_service import AuditLogger
from app.services.booking import cancel_appointment
from app.services.gateways import GatewayRegistry
from app.services.notification_service import Notifier
from app.services.reschedule import reschedule_appointment

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{appointment_id}/reschedule")
async def reschedule(
    appointment_id: UUID,
    body: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    try:
        return await reschedule_appointment(
            db,
            appointment_id=appointment_id,
            user=current_user,
            new_slot_id=body.new_slot_id,
            provider=body.provider,
            gateways=gateways,
            notifier=notifier,
            auditor=auditor,
        )
    except HTTPException:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("Reschedule failed for appointment %s", appointment_id)
        raise HTTPException(
            status_code=500,
            detail={"error": "Reschedule failed. Please try again.", "code": "RESCHEDULE_FAILED"},
        )


@router.post("/{appointment_id}/cancel")
async def cancel(
    appointment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    try:
        return await cancel_appointment(
            db,
            appointment_id=appointment_id,
            user=current_user,
            notifier=notifier,
            auditor=auditor,
        )
    except HTTPException:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("Cancellation failed for appointment %s", appointment_id)
        raise HTTPException(
            status_code=500,
            detail={"error": "Cancellation failed", "code": "CANCEL_FAILED"},
        )
