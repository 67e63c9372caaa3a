"""ProcessedPayment model recording provider payments that already moved credits."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class ProcessedPayment(Base):
    """One row per provider payment reference; a second delivery of the same payment is a no-op."""

    __tablename__ = "processed_payments"
    __table_args__ = (UniqueConstraint("provider", "reference", name="uq_processed_payments_provider_reference"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String, nullable=False)
    reference = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
