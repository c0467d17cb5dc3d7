"""Billing webhook event log."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.stripe_event import StripeEvent


async def get_stripe_event(event_id: str, db: AsyncSession) -> Optional[StripeEvent]:
    result = await db.execute(select(StripeEvent).where(StripeEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def record_stripe_event(event_id: str, event_type: str, db: AsyncSession) -> StripeEvent:
    """Insert a pending row for a delivered event, or return the existing one."""
    existing = await get_stripe_event(event_id, db)
    if existing is not None:
        return existing

    row = StripeEvent(event_id=event_id, type=event_type, received_at=datetime.now(timezone.utc))
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent delivery of the same event inserted first.
        await db.rollback()
        existing = await get_stripe_event(event_id, db)
        if existing is None:
            raise
        return existing
    return row


async def mark_stripe_event_outcome(
    event_id: str,
    ok: bool,
    db: AsyncSession,
    error: Optional[str] = None,
) -> Optional[StripeEvent]:
    """Record the processing outcome.

    Success is final. A failure is provisional: the first failure's error is
    kept until a redelivery succeeds, which flips the row to processed and
    clears the error.
    """
    row = await get_stripe_event(event_id, db)
    if row is None or row.processed_ok is True:
        return row
    if row.processed_ok is False and not ok:
        return row

    row.processed_ok = bool(ok)
    row.processed_at = datetime.now(timezone.utc)
    row.error = error
    await db.commit()
    return row


async def is_stripe_event_processed(event_id: str, db: AsyncSession) -> bool:
    row = await get_stripe_event(event_id, db)
    return bool(row is not None and row.processed_ok)


async def list_recent_stripe_events(db: AsyncSession, limit: int = 50) -> List[StripeEvent]:
    result = await db.execute(
        select(StripeEvent).order_by(StripeEvent.received_at.desc()).limit(max(int(limit), 0))
    )
    return list(result.scalars().all())
