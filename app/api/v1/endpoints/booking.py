"""Booking and payment verification endpoints.

Thin HTTP layer: all decisions live in app.services.booking and
app.services.verification.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_auditor, get_current_user, get_gateways, get_notifier
from app.models.user import User
from app.schemas.booking import BookingCreate, PaymentVerify
from app.services.audit_service import AuditLogger
from app.services.booking import create_booking
from app.services.gateways import GatewayRegistry
from app.services.notification_service import Notifier
from app.services.verification import verify_payment

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("")
async def book_slot(
    body: BookingCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    """Book a slot. Online slots return checkout parameters and a hold countdown."""
    try:
        return await create_booking(
            db,
            slot_id=body.slot_id,
            user=current_user,
            payment_method=body.payment_method,
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
        logger.exception("Booking failed for slot %s", body.slot_id)
        raise HTTPException(
            status_code=500,
            detail={"error": "Booking failed. Please try again.", "code": "BOOKING_FAILED"},
        )


@router.post("/verify")
async def verify_booking_payment(
    body: PaymentVerify,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    """Confirm a booking from the client-side checkout result."""
    try:
        return await verify_payment(
            db,
            appointment_id=body.appointment_id,
            user=current_user,
            proof=body.proof(),
            gateways=gateways,
            notifier=notifier,
            auditor=auditor,
        )
    except HTTPException:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("Payment verification failed for appointment %s", body.appointment_id)
        raise HTTPException(
            status_code=500,
            detail={"error": "Payment verification failed", "code": "VERIFICATION_FAILED"},
        )
