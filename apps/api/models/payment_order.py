"""PaymentOrder model mapping provider order ids back to users."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class PaymentOrder(Base):
    """Order recorded at checkout so asynchronous callbacks can find their user."""

    __tablename__ = "payment_orders"

    order_id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    plan = Column(String, nullable=False)
    amount = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
