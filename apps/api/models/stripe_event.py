"""StripeEvent model: audit log of received billing webhooks."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String, Text

from database import Base


class StripeEvent(Base):
    """One row per delivered webhook event; outcome is recorded once."""

    __tablename__ = "stripe_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=False, unique=True, index=True)
    type = Column(String, nullable=False)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    # NULL while pending, then True/False once processing finished.
    processed_ok = Column(Boolean, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
