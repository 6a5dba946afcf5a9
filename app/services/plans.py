"""Subscription plan lookup used for payment-mode gating."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription_plan import Plan, Subscription, SubscriptionStatus
from app.models.slot import SlotPaymentMode
from app.utils import clock

logger = logging.getLogger(__name__)

OFFLINE_MODES = [SlotPaymentMode.FREE.value, SlotPaymentMode.OFFLINE.value]


async def get_plan_for_clinic(db: AsyncSession, clinic_id: UUID) -> Optional[Plan]:
    """Return the plan of the clinic's current subscription, or None."""
    now = clock.utcnow()
    result = await db.execute(
        select(Plan)
        .join(Subscription, Subscription.plan_id == Plan.id)
        .where(
            Subscription.clinic_id == clinic_id,
            Subscription.deleted_at.is_(None),
            Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL]),
            or_(Subscription.end_date.is_(None), Subscription.end_date > now),
            Plan.is_active.is_(True),
        )
    )
    plan = result.scalars().first()
    if plan is None:
        logger.info("Clinic %s has no active subscription plan", clinic_id)
    return plan


def allows_online_payments(plan: Optional[Plan]) -> bool:
    return bool(plan and plan.allow_online_payments)
