"""Provider-agnostic subscription state and its effect on credit ceilings."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import plan_credit_allotments
from models.subscription import Subscription
from services.credits import reset_user_credits, update_total_credits
from services.processed_payments import PaymentReference, payment_already_processed, record_payment

logger = logging.getLogger(__name__)


class Plan(str, enum.Enum):
    FREE = "Free"
    PRO = "Pro"
    BUSINESS = "Business"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"
    INACTIVE = "inactive"


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    PADDLE = "paddle"
    FATORA = "fatora"


UPDATABLE_FIELDS = frozenset(
    {
        "plan",
        "status",
        "payment_provider",
        "stripe_customer_id",
        "stripe_subscription_id",
        "paddle_customer_id",
        "paddle_subscription_id",
        "transaction_id",
        "current_period_start",
        "current_period_end",
    }
)


@dataclass(frozen=True)
class SubscriptionUpdate:
    """Changes to one user's subscription row.

    Only keys present in ``fields`` are written; an explicit ``None`` clears
    the column. ``renewal`` marks a confirmed payment for a new billing
    period, which restarts the user's credit usage. ``payment`` names the
    provider payment behind the change so it is applied only once.
    """

    user_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    renewal: bool = False
    payment: Optional[PaymentReference] = None

    def __post_init__(self) -> None:
        unknown = set(self.fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported subscription fields: {sorted(unknown)}")


def normalize_plan(value: Any, default: Plan = Plan.FREE) -> str:
    text = str(value or "").strip().lower()
    for plan in Plan:
        if plan.value.lower() == text:
            return plan.value
    return default.value


def entitled_plan(plan: Optional[str], status: Optional[str]) -> str:
    """Plan whose allotment applies; anything short of active earns the Free ceiling."""
    if status == SubscriptionStatus.ACTIVE.value:
        return normalize_plan(plan)
    return Plan.FREE.value


def plan_allotment(plan: Optional[str]) -> int:
    allotments = plan_credit_allotments()
    return allotments.get(normalize_plan(plan), allotments[Plan.FREE.value])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def get_subscription(user_id: str, db: AsyncSession) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_stripe_customer(customer_id: str, db: AsyncSession) -> Optional[Subscription]:
    if not customer_id:
        return None
    result = await db.execute(select(Subscription).where(Subscription.stripe_customer_id == customer_id))
    return result.scalars().first()


async def find_by_paddle_subscription(subscription_id: str, db: AsyncSession) -> Optional[Subscription]:
    if not subscription_id:
        return None
    result = await db.execute(
        select(Subscription).where(Subscription.paddle_subscription_id == str(subscription_id))
    )
    return result.scalars().first()


async def apply_subscription_update(
    update: SubscriptionUpdate,
    db: AsyncSession,
    *,
    adjust_credits: bool = True,
) -> Optional[Subscription]:
    """Upsert the user's subscription row and move the credit ceiling with the entitled plan.

    An update carrying a ``payment`` reference is applied at most once: the
    reference is recorded with the row change, and a repeated delivery of the
    same payment returns the current row without touching state or credits.
    """
    if update.payment is not None and await payment_already_processed(update.payment, db):
        logger.info(
            "Payment %s:%s already processed for user=%s; ignoring",
            update.payment.provider,
            update.payment.reference,
            update.user_id,
        )
        return await get_subscription(update.user_id, db)

    try:
        row = await get_subscription(update.user_id, db)
        if row is None:
            previous_entitlement = Plan.FREE.value
            row = Subscription(
                user_id=update.user_id,
                plan=Plan.FREE.value,
                status=SubscriptionStatus.INACTIVE.value,
            )
            db.add(row)
        else:
            previous_entitlement = entitled_plan(row.plan, row.status)

        for name, value in update.fields.items():
            setattr(row, name, value)
        row.updated_at = _utcnow()
        if update.payment is not None:
            record_payment(update.payment, update.user_id, db)

        plan, status = row.plan, row.status
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if update.payment is None:
            logger.error("Error updating subscription for user=%s: %s", update.user_id, exc)
            return None
        logger.info("Payment %s:%s processed concurrently; ignoring", update.payment.provider, update.payment.reference)
        return await get_subscription(update.user_id, db)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error updating subscription for user=%s: %s", update.user_id, exc)
        return None

    logger.info(
        "subscription_updated user=%s plan=%s status=%s provider=%s",
        update.user_id,
        plan,
        status,
        update.fields.get("payment_provider"),
    )

    if adjust_credits:
        current_entitlement = entitled_plan(plan, status)
        if update.renewal and status == SubscriptionStatus.ACTIVE.value:
            await reset_user_credits(update.user_id, plan_allotment(current_entitlement), db)
        elif current_entitlement != previous_entitlement:
            await update_total_credits(update.user_id, plan_allotment(current_entitlement), db)

    return row


async def begin_checkout(
    user_id: str,
    provider: PaymentProvider,
    plan: str,
    db: AsyncSession,
    **provider_fields: Any,
) -> Optional[Subscription]:
    """Record a checkout attempt as a pending subscription without touching credits."""
    fields: Dict[str, Any] = {
        "plan": normalize_plan(plan),
        "status": SubscriptionStatus.PENDING.value,
        "payment_provider": provider.value,
    }
    fields.update(provider_fields)
    return await apply_subscription_update(
        SubscriptionUpdate(user_id=user_id, fields=fields),
        db,
        adjust_credits=False,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_subscription(row: Optional[Subscription]) -> Dict[str, Any]:
    if row is None:
        return {
            "id": "free",
            "plan": Plan.FREE.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "paymentProvider": None,
            "currentPeriodStart": None,
            "currentPeriodEnd": None,
            "maxCredits": plan_allotment(Plan.FREE.value),
        }
    return {
        "id": row.id,
        "plan": row.plan,
        "status": row.status,
        "paymentProvider": row.payment_provider,
        "currentPeriodStart": _iso(row.current_period_start),
        "currentPeriodEnd": _iso(row.current_period_end),
        "maxCredits": plan_allotment(entitled_plan(row.plan, row.status)),
    }
