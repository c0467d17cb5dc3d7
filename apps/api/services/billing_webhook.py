"""Stripe webhook verification and ingestion into subscriptions and the ledger."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_ledger import CreditsSource
from services.credits import CreditOperationOptions, CreditsError, add_credits
from services.stripe_events import (
    is_stripe_event_processed,
    mark_stripe_event_outcome,
    record_stripe_event,
)
from services.subscription import UNLIMITED_STATUSES, mark_subscription_cancelled, upsert_subscription


logger = logging.getLogger(__name__)

HandlerResult = Tuple[bool, Optional[str]]

PROCESSING_ERRORS = (CreditsError, SQLAlchemyError, KeyError, TypeError, ValueError)


class WebhookVerificationError(ValueError):
    """Raised when a webhook payload or its signature is rejected."""


def verify_webhook_payload(payload: bytes, sig_header: Optional[str], secret: str) -> Dict[str, Any]:
    """Check the Stripe-Signature header and decode the event body."""
    if not sig_header:
        raise WebhookVerificationError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            body,
            sig_header,
            secret,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
        event = json.loads(body)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(f"Invalid signature: {exc}") from exc
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookVerificationError(f"Invalid payload: {exc}") from exc

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Invalid payload: missing event id or type")
    return event


def _from_unix(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items and isinstance(items[0], dict) else {}


def _period_field(subscription: Dict[str, Any], name: str) -> Any:
    # Newer API versions moved billing periods onto subscription items.
    value = subscription.get(name)
    if value is None:
        value = _first_item(subscription).get(name)
    return value


def subscription_credit_grant(subscription: Dict[str, Any]) -> int:
    price = _first_item(subscription).get("price") or {}
    product_id = _object_id(price.get("product"))
    if product_id and product_id in settings.SUBSCRIPTION_PRODUCT_CREDITS:
        return int(settings.SUBSCRIPTION_PRODUCT_CREDITS[product_id])
    return int(settings.DEFAULT_SUBSCRIPTION_CREDITS)


def checkout_credit_amount(session: Dict[str, Any]) -> int:
    """Credits bought in a checkout session.

    Session metadata wins; otherwise each expanded line item contributes its
    price's ``credits_amount`` times the quantity.
    """
    metadata = session.get("metadata") or {}
    if metadata.get("credits_amount"):
        return int(metadata["credits_amount"])

    total = 0
    for item in (session.get("line_items") or {}).get("data") or []:
        price_metadata = (item.get("price") or {}).get("metadata") or {}
        if price_metadata.get("credits_amount"):
            total += int(price_metadata["credits_amount"]) * int(item.get("quantity") or 1)
    return total


async def _handle_subscription_upsert(event: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    subscription = event["data"]["object"]
    metadata = subscription.get("metadata") or {}
    user_id = metadata.get("user_id")
    if not user_id:
        logger.error("stripe_subscription_missing_user event=%s subscription=%s", event["id"], subscription.get("id"))
        return False, "No user_id in subscription metadata"

    status = str(subscription.get("status") or "none")
    period_start_raw = _period_field(subscription, "current_period_start")
    await upsert_subscription(
        user_id,
        db,
        status=status,
        stripe_subscription_id=_object_id(subscription.get("id")),
        stripe_customer_id=_object_id(subscription.get("customer")),
        current_period_start=_from_unix(period_start_raw),
        current_period_end=_from_unix(_period_field(subscription, "current_period_end")),
        trial_end=_from_unix(subscription.get("trial_end")),
    )

    if status not in UNLIMITED_STATUSES:
        return True, None

    credits = subscription_credit_grant(subscription)
    if credits <= 0:
        return True, None
    # Without a period start the event itself is the only stable grant reference.
    period_ref = period_start_raw if period_start_raw not in (None, "") else event["id"]
    await add_credits(
        user_id,
        credits,
        CreditOperationOptions(
            source=CreditsSource.SUBSCRIPTION,
            ref_type="subscription_period",
            ref_id=f"{subscription.get('id')}:{period_ref}",
            metadata={"subscription_id": subscription.get("id"), "event_id": event["id"], "credits": credits},
        ),
        db,
    )
    return True, None


async def _handle_subscription_deleted(event: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    subscription = event["data"]["object"]
    user_id = (subscription.get("metadata") or {}).get("user_id")
    if not user_id:
        return False, "No user_id in subscription metadata"
    await mark_subscription_cancelled(user_id, db)
    return True, None


async def _handle_checkout_completed(event: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    user_id = session.get("client_reference_id") or metadata.get("user_id")
    if not user_id:
        return False, "No user_id in checkout session"
    if session.get("mode") != "payment" or session.get("subscription"):
        return True, "Handled by subscription events"

    credits = checkout_credit_amount(session)
    if credits <= 0:
        return True, "No credits amount determined"

    session_id = str(session.get("id"))
    await add_credits(
        user_id,
        credits,
        CreditOperationOptions(
            source=CreditsSource.COUPON,
            ref_type="checkout_credits",
            ref_id=session_id,
            idempotency_key=f"checkout_{session_id}",
            metadata={"checkout_id": session_id, "event_id": event["id"], "credits": credits},
        ),
        db,
    )
    return True, None


async def _acknowledge(event: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    return True, None


EVENT_HANDLERS: Dict[str, Callable[[Dict[str, Any], AsyncSession], Awaitable[HandlerResult]]] = {
    "customer.subscription.created": _handle_subscription_upsert,
    "customer.subscription.updated": _handle_subscription_upsert,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "checkout.session.completed": _handle_checkout_completed,
    "invoice.payment_succeeded": _acknowledge,
    "invoice.payment_failed": _acknowledge,
}


async def process_stripe_event(event: Dict[str, Any], db: AsyncSession) -> Dict[str, Any]:
    """Apply one verified event; outcome is written to the event log once."""
    event_id = str(event["id"])
    event_type = str(event["type"])

    await record_stripe_event(event_id, event_type, db)
    if await is_stripe_event_processed(event_id, db):
        logger.info("stripe_event_duplicate event=%s type=%s", event_id, event_type)
        return {"received": True, "status": "already_processed"}

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_event_unhandled event=%s type=%s", event_id, event_type)
        await mark_stripe_event_outcome(event_id, True, db)
        return {"received": True, "status": "ignored"}

    try:
        ok, note = await handler(event, db)
    except PROCESSING_ERRORS as exc:
        await db.rollback()
        logger.exception("stripe_event_failed event=%s type=%s: %s", event_id, event_type, exc)
        await mark_stripe_event_outcome(event_id, False, db, error=str(exc))
        raise

    await mark_stripe_event_outcome(event_id, ok, db, error=None if ok else note)
    logger.info("stripe_event_processed event=%s type=%s ok=%s", event_id, event_type, ok)
    return {"received": True, "status": "processed" if ok else "failed", "detail": note}
