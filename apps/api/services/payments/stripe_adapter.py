"""Stripe webhook adapter."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.payments.base import PaymentProviderAdapter, parse_timestamp
from services.payments.types import (
    ProviderEvent,
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookVerificationError,
)
from services.subscriptions import (
    PaymentProvider,
    Plan,
    SubscriptionStatus,
    SubscriptionUpdate,
    find_by_stripe_customer,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.FAILED,
    "unpaid": SubscriptionStatus.FAILED,
    "past_due": SubscriptionStatus.FAILED,
    "paused": SubscriptionStatus.INACTIVE,
}


def plan_for_price(price_id: Optional[str]) -> str:
    if price_id and price_id == settings.STRIPE_PRICE_ID_PRO:
        return Plan.PRO.value
    if price_id and price_id == settings.STRIPE_PRICE_ID_BUSINESS:
        return Plan.BUSINESS.value
    return Plan.FREE.value


def map_status(stripe_status: Optional[str]) -> str:
    return _STATUS_MAP.get(str(stripe_status or ""), SubscriptionStatus.PENDING).value


def _object_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


class StripeAdapter(PaymentProviderAdapter):
    provider = "stripe"

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
        if not secret:
            raise WebhookConfigurationError("Stripe configuration is incomplete")

        signature = headers.get("stripe-signature") or ""
        if not signature:
            raise WebhookVerificationError("Missing Stripe signature")

        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"),
                signature,
                secret,
                SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookVerificationError("Invalid signature") from exc
        return True

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid payload") from exc
        if not isinstance(event, dict) or not isinstance((event.get("data") or {}).get("object"), dict):
            raise WebhookPayloadError("Invalid payload")
        return ProviderEvent(provider="stripe", event_type=str(event.get("type") or ""), payload=event)

    async def resolve_update(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        data_object = event.payload["data"]["object"]

        if event.event_type in ("customer.subscription.created", "customer.subscription.updated"):
            return await self._subscription_update(data_object, db)

        if event.event_type == "customer.subscription.deleted":
            return await self._subscription_deleted(data_object, db)

        if event.event_type == "checkout.session.completed":
            subscription_id = _object_id(data_object.get("subscription"))
            if data_object.get("mode") != "subscription" or not subscription_id:
                logger.info("Ignoring non-subscription checkout session %s", data_object.get("id"))
                return None
            metadata = data_object.get("metadata") or {}
            user_hint = data_object.get("client_reference_id") or metadata.get("userId")
            subscription = await self.retrieve_subscription(subscription_id)
            return await self._subscription_update(subscription, db, user_hint=user_hint)

        logger.info("Unhandled Stripe event type: %s", event.event_type)
        return None

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch the full subscription object from Stripe as a plain dict."""
        api_key = (settings.STRIPE_SECRET_KEY or "").strip()
        if not api_key:
            raise WebhookConfigurationError("Stripe configuration is incomplete")
        subscription = await asyncio.to_thread(
            stripe.Subscription.retrieve,
            subscription_id,
            api_key=api_key,
        )
        return subscription.to_dict()

    async def _resolve_user(
        self,
        subscription: Dict[str, Any],
        db: AsyncSession,
        user_hint: Optional[str] = None,
    ) -> Optional[str]:
        customer_id = _object_id(subscription.get("customer"))
        row = await find_by_stripe_customer(customer_id, db) if customer_id else None
        if row is not None:
            return row.user_id
        metadata = subscription.get("metadata") or {}
        user_id = user_hint or metadata.get("userId")
        if not user_id:
            logger.error("No subscription row for Stripe customer %s", customer_id)
        return user_id or None

    async def _subscription_update(
        self,
        subscription: Dict[str, Any],
        db: AsyncSession,
        user_hint: Optional[str] = None,
    ) -> Optional[SubscriptionUpdate]:
        user_id = await self._resolve_user(subscription, db, user_hint)
        if not user_id:
            return None

        item = _first_item(subscription)
        price_id = (item.get("price") or {}).get("id")
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")
        plan = plan_for_price(price_id)
        status = map_status(subscription.get("status"))
        logger.info("Stripe subscription %s: %s - %s plan", subscription.get("id"), status, plan)

        return SubscriptionUpdate(
            user_id=user_id,
            fields={
                "plan": plan,
                "status": status,
                "payment_provider": PaymentProvider.STRIPE.value,
                "stripe_customer_id": _object_id(subscription.get("customer")),
                "stripe_subscription_id": subscription.get("id"),
                "current_period_start": parse_timestamp(period_start),
                "current_period_end": parse_timestamp(period_end),
            },
        )

    async def _subscription_deleted(
        self,
        subscription: Dict[str, Any],
        db: AsyncSession,
    ) -> Optional[SubscriptionUpdate]:
        customer_id = _object_id(subscription.get("customer"))
        row = await find_by_stripe_customer(customer_id, db)
        if row is None:
            logger.error("Error finding user for subscription deletion: customer=%s", customer_id)
            return None
        return SubscriptionUpdate(
            user_id=row.user_id,
            fields={
                "plan": Plan.FREE.value,
                "status": SubscriptionStatus.INACTIVE.value,
                "stripe_subscription_id": None,
                "current_period_start": None,
                "current_period_end": None,
            },
        )
