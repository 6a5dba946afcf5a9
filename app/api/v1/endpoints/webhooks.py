"""Payment gateway webhooks (Razorpay, Stripe).

Thin HTTP layer: all reconciliation logic lives in app.services.reconciler.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_auditor, get_gateways, get_notifier
from app.core.errors import WebhookSignatureError
from app.schemas.booking import WebhookAck
from app.services.audit_service import AuditLogger
from app.services.gateways import GatewayRegistry
from app.services.notification_service import Notifier
from app.services.reconciler import reconcile_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


async def _handle(
    provider: str,
    clinic_id: Optional[UUID],
    request: Request,
    db: AsyncSession,
    gateways: GatewayRegistry,
    notifier: Notifier,
    auditor: AuditLogger,
):
    raw_body = await request.body()
    try:
        outcome = await reconcile_webhook(
            db,
            provider=provider,
            raw_body=raw_body,
            headers=request.headers,
            clinic_id=clinic_id,
            gateways=gateways,
            notifier=notifier,
            auditor=auditor,
        )
    except WebhookSignatureError as e:
        await db.rollback()
        logger.warning("Rejected %s webhook: %s", provider, e)
        return Response(status_code=400)
    except Exception:
        await db.rollback()
        logger.exception("%s webhook processing failed", provider)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    logger.info("%s webhook %s", provider, outcome.value)
    return WebhookAck(status=outcome.value)


@router.post("/{provider}", response_model=WebhookAck)
async def payment_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    """Platform-level webhook, signed with the shared secret from settings."""
    return await _handle(provider, None, request, db, gateways, notifier, auditor)


@router.post("/{provider}/{clinic_id}", response_model=WebhookAck)
async def clinic_payment_webhook(
    provider: str,
    clinic_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateways),
    notifier: Notifier = Depends(get_notifier),
    auditor: AuditLogger = Depends(get_auditor),
):
    """Per-clinic webhook, signed with that clinic's gateway webhook secret."""
    return await _handle(provider, clinic_id, request, db, gateways, notifier, auditor)
