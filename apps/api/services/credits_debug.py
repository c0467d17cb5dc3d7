"""Read-only credits inspection for support and debugging."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.credit_ledger import CreditLedgerEntry
from models.stripe_event import StripeEvent
from services.credits import StoreUnavailableError, get_balance, list_recent_entries
from services.stripe_events import list_recent_stripe_events
from services.subscription import is_unlimited


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_ledger_entry(entry: CreditLedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "delta": entry.delta,
        "source": entry.source.value if entry.source is not None else None,
        "ref_type": entry.ref_type,
        "ref_id": entry.ref_id,
        "metadata": dict(entry.entry_metadata or {}),
        "created_at": _isoformat(entry.created_at),
    }


def serialize_stripe_event(event: StripeEvent) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "type": event.type,
        "received_at": _isoformat(event.received_at),
        "processed_ok": event.processed_ok,
        "processed_at": _isoformat(event.processed_at),
        "error": event.error,
    }


async def get_debug_info(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Balance, subscription flag, recent ledger rows and recent billing events.

    Any failed lookup aborts the whole view.
    """
    balance = await get_balance(user_id, db)
    entries = await list_recent_entries(user_id, db, limit=settings.DEBUG_LEDGER_ENTRY_LIMIT)
    try:
        events = await list_recent_stripe_events(db, limit=settings.DEBUG_STRIPE_EVENT_LIMIT)
        is_subscriber = await is_unlimited(user_id, db)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailableError("Credits store unavailable during debug lookup") from exc

    return {
        "user_id": user_id,
        "balance": balance,
        "is_subscriber": is_subscriber,
        "ledger_entries": [serialize_ledger_entry(entry) for entry in entries],
        "stripe_events": [serialize_stripe_event(event) for event in events],
    }
