"""Subscription model mirrored from the billing provider."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class Subscription(Base):
    """Latest known billing subscription state for a user."""

    __tablename__ = "subscriptions"

    user_id = Column(String, primary_key=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    stripe_customer_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="none")
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
