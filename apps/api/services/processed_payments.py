"""Idempotency records for provider payments that move credits."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.processed_payment import ProcessedPayment


@dataclass(frozen=True)
class PaymentReference:
    """A provider's own id for one payment (Paddle order, Fatora order, Stripe PaymentIntent)."""

    provider: str
    reference: str


async def payment_already_processed(payment: PaymentReference, db: AsyncSession) -> bool:
    result = await db.execute(
        select(ProcessedPayment.id)
        .where(ProcessedPayment.provider == payment.provider)
        .where(ProcessedPayment.reference == payment.reference)
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


def record_payment(payment: PaymentReference, user_id: str, db: AsyncSession) -> None:
    """Stage the record in the caller's transaction; the unique key rejects a concurrent duplicate at commit."""
    db.add(ProcessedPayment(provider=payment.provider, reference=payment.reference, user_id=user_id))
