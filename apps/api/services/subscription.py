"""Subscription status lookups and billing-driven updates."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription import Subscription


UNLIMITED_STATUSES = {"active", "trialing"}
GRACE_STATUS = "past_due"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def subscription_grants_unlimited(
    status: Optional[str],
    current_period_end: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Active/trialing plans are unlimited; past_due stays unlimited until period end."""
    normalized = str(status or "").strip().lower()
    if normalized in UNLIMITED_STATUSES:
        return True
    if normalized == GRACE_STATUS:
        period_end = _as_utc(current_period_end)
        if period_end is None:
            return False
        current = _as_utc(now) or datetime.now(timezone.utc)
        return period_end > current
    return False


async def get_subscription(user_id: str, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def is_unlimited(user_id: str, db: AsyncSession) -> bool:
    subscription = await get_subscription(user_id, db)
    if subscription is None:
        return False
    return subscription_grants_unlimited(subscription.status, subscription.current_period_end)


async def upsert_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    status: str,
    stripe_subscription_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    trial_end: Optional[datetime] = None,
) -> Subscription:
    subscription = await get_subscription(user_id, db)
    if subscription is None:
        subscription = Subscription(user_id=user_id)
        db.add(subscription)

    subscription.status = status
    subscription.stripe_subscription_id = stripe_subscription_id
    subscription.stripe_customer_id = stripe_customer_id
    subscription.current_period_start = current_period_start
    subscription.current_period_end = current_period_end
    subscription.trial_end = trial_end
    subscription.cancelled_at = None
    await db.commit()
    return subscription


async def mark_subscription_cancelled(user_id: str, db: AsyncSession) -> Optional[Subscription]:
    subscription = await get_subscription(user_id, db)
    if subscription is None:
        return None
    subscription.status = "canceled"
    subscription.cancelled_at = datetime.now(timezone.utc)
    await db.commit()
    return subscription
