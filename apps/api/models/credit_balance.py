"""CreditBalance model: one credit allotment row per user."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Per-period credit ceiling and consumption for a user."""

    __tablename__ = "credits"
    __table_args__ = (CheckConstraint("used_credits >= 0", name="ck_credits_used_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    total_credits = Column(Integer, nullable=False)
    used_credits = Column(Integer, nullable=False, default=0)
    reset_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_balance")
