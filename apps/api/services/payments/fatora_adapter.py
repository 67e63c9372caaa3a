"""Fatora payment callback adapter."""

from __future__ import annotations

import calendar
import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment_order import PaymentOrder
from models.user import User
from services.payments.base import PaymentProviderAdapter, utcnow
from services.payments.types import ProviderEvent, WebhookPayloadError, WebhookVerificationError
from services.processed_payments import PaymentReference
from services.subscriptions import (
    PaymentProvider,
    Plan,
    SubscriptionStatus,
    SubscriptionUpdate,
    get_subscription,
    normalize_plan,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-fatora-signature"


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def plan_for_amount(amount: Any) -> str:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return Plan.FREE.value
    if value == Decimal(settings.FATORA_PRICE_PRO):
        return Plan.PRO.value
    if value == Decimal(settings.FATORA_PRICE_BUSINESS):
        return Plan.BUSINESS.value
    return Plan.FREE.value


def price_for_plan(plan: str) -> int:
    if plan == Plan.BUSINESS.value:
        return int(settings.FATORA_PRICE_BUSINESS)
    return int(settings.FATORA_PRICE_PRO)


def add_one_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_order_user_fragment(order_id: Any) -> Optional[str]:
    """User fragment from a legacy ``order_<timestamp>_<user>`` order id."""
    parts = str(order_id or "").split("_")
    if len(parts) < 3 or not parts[-1]:
        return None
    return parts[-1]


async def resolve_order_user(order_id: str, db: AsyncSession) -> Optional[str]:
    """Find the user behind an order: recorded order first, then the legacy id convention."""
    order = await db.get(PaymentOrder, order_id)
    if order is not None:
        return order.user_id

    fragment = parse_order_user_fragment(order_id)
    if fragment is None:
        logger.error("Invalid order_id format in Fatora webhook: %s", order_id)
        return None

    exact = await db.get(User, fragment)
    if exact is not None:
        return exact.id

    result = await db.execute(select(User.id).where(User.id.startswith(fragment, autoescape=True)).limit(2))
    matches = list(result.scalars().all())
    if len(matches) != 1:
        logger.error("Cannot resolve user fragment %s from order_id %s (%d matches)", fragment, order_id, len(matches))
        return None
    return matches[0]


def _amount_matches(amount: Any, expected: Any) -> bool:
    try:
        return Decimal(str(amount)) == Decimal(str(expected))
    except (InvalidOperation, ValueError):
        return False


async def build_payment_update(
    order_id: str,
    amount: Any,
    transaction_id: Any,
    db: AsyncSession,
) -> Optional[SubscriptionUpdate]:
    """Describe a successful Fatora payment for ``order_id`` as one renewal.

    A recorded order fixes the plan and the price; a payment whose amount
    disagrees with it is refused. The order id is the payment reference, so a
    second delivery for the same order, whether from the webhook or from a
    server-side verification, changes nothing.
    """
    user_id = await resolve_order_user(order_id, db)
    if user_id is None:
        return None

    order = await db.get(PaymentOrder, order_id)
    if order is not None:
        if amount is not None and order.amount is not None and not _amount_matches(amount, order.amount):
            logger.error(
                "Fatora payment amount %s does not match order %s amount %s; ignoring",
                amount,
                order_id,
                order.amount,
            )
            return None
        plan = normalize_plan(order.plan)
    else:
        plan = plan_for_amount(amount)

    logger.info("Processing successful Fatora payment for user %s, plan %s", user_id, plan)
    now = utcnow()
    return SubscriptionUpdate(
        user_id=user_id,
        fields={
            "plan": plan,
            "status": SubscriptionStatus.ACTIVE.value,
            "payment_provider": PaymentProvider.FATORA.value,
            "transaction_id": str(transaction_id) if transaction_id else None,
            "current_period_start": now,
            "current_period_end": add_one_month(now),
        },
        renewal=True,
        payment=PaymentReference(PaymentProvider.FATORA.value, order_id),
    )


class FatoraAdapter(PaymentProviderAdapter):
    provider = "fatora"

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        secret = (settings.FATORA_WEBHOOK_SECRET or "").strip()
        if not secret:
            logger.warning("FATORA_WEBHOOK_SECRET not set, skipping signature verification")
            return False

        signature = (headers.get(SIGNATURE_HEADER) or "").strip().lower()
        if not signature:
            logger.error("No Fatora signature found in webhook request")
            raise WebhookVerificationError("No signature")

        if not hmac.compare_digest(sign_payload(raw_body, secret), signature):
            logger.error("Fatora webhook signature mismatch")
            raise WebhookVerificationError("Invalid signature")
        return True

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        try:
            body = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid webhook payload") from exc
        if not isinstance(body, dict) or not body.get("event") or not isinstance(body.get("data"), dict):
            logger.error("Missing event or data in Fatora webhook")
            raise WebhookPayloadError("Invalid webhook payload")
        return ProviderEvent(provider="fatora", event_type=str(body["event"]), payload=body["data"])

    async def resolve_update(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        if event.event_type == "payment.succeeded":
            return await self._payment_succeeded(event, db)
        if event.event_type == "payment.failed":
            return await self._payment_failed(event, db)
        logger.info("Unhandled Fatora webhook event: %s", event.event_type)
        return None

    async def _payment_succeeded(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        order_id = event.payload.get("order_id")
        if not order_id:
            logger.error("No order_id in Fatora payment.succeeded webhook")
            return None
        return await build_payment_update(
            str(order_id),
            event.payload.get("amount"),
            event.payload.get("transaction_id"),
            db,
        )

    async def _payment_failed(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        order_id = event.payload.get("order_id")
        if not order_id:
            logger.error("No order_id in Fatora payment.failed webhook")
            return None

        user_id = await resolve_order_user(str(order_id), db)
        if user_id is None:
            return None

        row = await get_subscription(user_id, db)
        if row is None or row.payment_provider != PaymentProvider.FATORA.value:
            logger.info("No Fatora subscription to mark failed for user %s", user_id)
            return None

        logger.info("Processing failed Fatora payment for user %s", user_id)
        return SubscriptionUpdate(user_id=user_id, fields={"status": SubscriptionStatus.FAILED.value})
