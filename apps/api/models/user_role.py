"""UserRole model for operator permissions."""

import uuid

from sqlalchemy import Column, DateTime, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


ADMIN_ROLE = "admin"


class UserRole(Base):
    """Role grant for an authenticated user."""

    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
