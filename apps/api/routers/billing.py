"""Billing webhook and subscription status router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.billing_webhook import (
    PROCESSING_ERRORS,
    WebhookVerificationError,
    process_stripe_event,
    verify_webhook_payload,
)
from services.subscription import get_subscription, subscription_grants_unlimited

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/subscription-status")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    subscription = await get_subscription(auth.user_id, db)
    if subscription is None:
        return {"status": "none", "has_active_subscription": False, "current_period_end": None}

    period_end = subscription.current_period_end
    return {
        "status": subscription.status,
        "has_active_subscription": subscription_grants_unlimited(subscription.status, period_end),
        "current_period_end": period_end.isoformat() if period_end else None,
    }


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Stripe webhook is not configured.")

    payload = await request.body()
    try:
        event = verify_webhook_payload(payload, request.headers.get("stripe-signature"), settings.STRIPE_WEBHOOK_SECRET)
    except WebhookVerificationError as exc:
        logger.warning("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        return await process_stripe_event(event, db)
    except PROCESSING_ERRORS as exc:
        raise HTTPException(status_code=500, detail="Webhook processing failed") from exc
