"""CreditsAccount model: per-user balance cache derived from the ledger."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditsAccount(Base):
    """Denormalized running sum of a user's ledger entries."""

    __tablename__ = "credits_accounts"

    user_id = Column(String, primary_key=True)
    balance_cache = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)
