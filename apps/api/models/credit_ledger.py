"""Credits ledger model: append-only signed balance deltas."""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String

from database import Base


class CreditsSource(str, enum.Enum):
    """Closed set of reasons a ledger entry can exist."""

    USAGE = "usage"
    SUBSCRIPTION = "subscription"
    COUPON = "coupon"
    ADMIN_ADJUST = "admin_adjust"
    REFUND = "refund"
    MIGRATION = "migration"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedgerEntry(Base):
    """Immutable credit ledger entry. Rows are never updated or deleted."""

    __tablename__ = "credits_ledger"
    __table_args__ = (
        Index("ix_credits_ledger_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    source = Column(
        Enum(
            CreditsSource,
            name="credits_source",
            native_enum=False,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    ref_type = Column(String, nullable=False)
    ref_id = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True)
    entry_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
