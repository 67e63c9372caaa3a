"""Paddle webhook adapter for Classic (form-encoded) and Billing (JSON) deliveries."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.payments.base import PaymentProviderAdapter, parse_timestamp, utcnow
from services.payments.types import ProviderEvent, WebhookPayloadError, WebhookVerificationError
from services.processed_payments import PaymentReference
from services.subscriptions import (
    PaymentProvider,
    Plan,
    SubscriptionStatus,
    SubscriptionUpdate,
    find_by_paddle_subscription,
    get_subscription,
    normalize_plan,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "paddle-signature"
SIGNATURE_TOLERANCE_SECONDS = 300

CANCELLED_EVENTS = {"subscription_cancelled", "subscription_canceled"}
PAYMENT_EVENTS = {"subscription_payment_succeeded", "transaction_completed"}
CANCELLED_STATUSES = {"deleted", "canceled", "cancelled"}


def sign_payload(raw_body: bytes, secret: str, timestamp: str) -> str:
    """``h1`` digest of a Paddle Billing signature: HMAC-SHA256 over ``<ts>:<body>``."""
    return hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + b":" + raw_body, hashlib.sha256).hexdigest()


def _signature_parts(header: str) -> Dict[str, List[str]]:
    parts: Dict[str, List[str]] = {}
    for item in header.split(";"):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts.setdefault(key, []).append(value)
    return parts


def _body(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Billing deliveries nest the entity under ``data``; Classic ones are flat."""
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def _subscription_id(payload: Dict[str, Any], event_type: str) -> Optional[str]:
    body = _body(payload)
    if body is payload:
        value = payload.get("subscription_id")
    elif event_type.startswith("transaction_"):
        value = body.get("subscription_id")
    else:
        value = body.get("id")
    return str(value) if value else None


def _customer_id(payload: Dict[str, Any]) -> Optional[str]:
    body = _body(payload)
    value = body.get("customer_id") if body is not payload else payload.get("user_id")
    return str(value) if value else None


def _next_bill_date(payload: Dict[str, Any]):
    body = _body(payload)
    return parse_timestamp(body.get("next_bill_date") or body.get("next_billed_at"))


def _passthrough(payload: Dict[str, Any]) -> Dict[str, Any]:
    body = _body(payload)
    raw = body.get("custom_data") if body is not payload else payload.get("passthrough")
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw or "{}")
    except ValueError as exc:
        raise WebhookPayloadError(f"Failed to parse passthrough data: {exc}") from exc
    return parsed if isinstance(parsed, dict) else {}


def _payment_id(payload: Dict[str, Any]) -> Optional[str]:
    """Classic payment alerts carry ``order_id``; a Billing transaction is its own ``data.id``."""
    body = _body(payload)
    value = payload.get("order_id") if body is payload else body.get("id")
    return str(value) if value else None


class PaddleAdapter(PaymentProviderAdapter):
    provider = "paddle"
    acknowledgement = {"success": True}

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        secret = (settings.PADDLE_WEBHOOK_SECRET or "").strip()
        if not secret:
            logger.warning("PADDLE_WEBHOOK_SECRET not set, accepting Paddle webhook without signature verification")
            return False

        parts = _signature_parts(headers.get(SIGNATURE_HEADER) or "")
        timestamps, digests = parts.get("ts") or [], parts.get("h1") or []
        if not timestamps or not digests:
            logger.error("No Paddle signature found in webhook request")
            raise WebhookVerificationError("Missing Paddle signature")

        timestamp = timestamps[0]
        try:
            age = abs(time.time() - int(timestamp))
        except ValueError as exc:
            raise WebhookVerificationError("Invalid signature") from exc
        if age > SIGNATURE_TOLERANCE_SECONDS:
            logger.error("Paddle webhook signature timestamp outside tolerance")
            raise WebhookVerificationError("Invalid signature")

        expected = sign_payload(raw_body, secret, timestamp)
        if not any(hmac.compare_digest(expected, digest.lower()) for digest in digests):
            logger.error("Paddle webhook signature mismatch")
            raise WebhookVerificationError("Invalid signature")
        return True

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        try:
            text = raw_body.decode("utf-8").strip()
        except UnicodeDecodeError as exc:
            raise WebhookPayloadError("Invalid webhook payload") from exc

        if text.startswith("{"):
            try:
                payload = json.loads(text)
            except ValueError as exc:
                raise WebhookPayloadError("Invalid webhook payload") from exc
        else:
            payload = dict(parse_qsl(text, keep_blank_values=True))

        if not isinstance(payload, dict) or not payload:
            raise WebhookPayloadError("Invalid webhook payload")

        event_name = str(payload.get("alert_name") or payload.get("event_type") or "")
        return ProviderEvent(provider="paddle", event_type=event_name.replace(".", "_"), payload=payload)

    async def resolve_update(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        if event.event_type == "subscription_created":
            return await self._subscription_created(event.payload, db)
        if event.event_type == "subscription_updated":
            return await self._subscription_updated(event, db)
        if event.event_type in CANCELLED_EVENTS:
            return await self._subscription_cancelled(event, db)
        if event.event_type in PAYMENT_EVENTS:
            return await self._payment_succeeded(event, db)
        logger.info("Ignoring unhandled Paddle event type: %s", event.event_type or "unknown")
        return None

    async def _subscription_created(self, payload: Dict[str, Any], db: AsyncSession) -> Optional[SubscriptionUpdate]:
        try:
            passthrough = _passthrough(payload)
        except WebhookPayloadError as exc:
            logger.error("%s", exc)
            return None

        user_id = passthrough.get("userId")
        if not user_id:
            logger.error("Missing userId in subscription passthrough")
            return None

        plan = normalize_plan(passthrough.get("planName"), default=Plan.PRO)
        row = await get_subscription(str(user_id), db)
        if (
            row is None
            or row.payment_provider != PaymentProvider.PADDLE.value
            or row.status != SubscriptionStatus.PENDING.value
            or row.plan != plan
        ):
            logger.error("No pending Paddle checkout for user %s, plan %s; ignoring subscription_created", user_id, plan)
            return None

        logger.info("Processing Paddle subscription created for user %s, plan %s", user_id, plan)
        return SubscriptionUpdate(
            user_id=str(user_id),
            fields={
                "plan": plan,
                "status": SubscriptionStatus.ACTIVE.value,
                "payment_provider": PaymentProvider.PADDLE.value,
                "paddle_subscription_id": _subscription_id(payload, "subscription_created"),
                "paddle_customer_id": _customer_id(payload),
                "current_period_start": utcnow(),
                "current_period_end": _next_bill_date(payload),
            },
        )

    async def _find_row(self, event: ProviderEvent, db: AsyncSession):
        subscription_id = _subscription_id(event.payload, event.event_type)
        row = await find_by_paddle_subscription(subscription_id, db)
        if row is None:
            logger.error("Error finding subscription for Paddle subscription_id=%s", subscription_id)
        return row

    async def _subscription_updated(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        row = await self._find_row(event, db)
        if row is None:
            return None
        paddle_status = str(_body(event.payload).get("status") or "").lower()
        status = SubscriptionStatus.CANCELLED if paddle_status in CANCELLED_STATUSES else SubscriptionStatus.ACTIVE
        return SubscriptionUpdate(
            user_id=row.user_id,
            fields={
                "status": status.value,
                "current_period_end": _next_bill_date(event.payload),
            },
        )

    async def _subscription_cancelled(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        row = await self._find_row(event, db)
        if row is None:
            return None
        return SubscriptionUpdate(user_id=row.user_id, fields={"status": SubscriptionStatus.CANCELLED.value})

    async def _payment_succeeded(self, event: ProviderEvent, db: AsyncSession) -> Optional[SubscriptionUpdate]:
        row = await self._find_row(event, db)
        if row is None:
            return None
        payment_id = _payment_id(event.payload)
        if payment_id is None:
            logger.warning("Paddle %s without a payment id; credits are not renewed", event.event_type)
        return SubscriptionUpdate(
            user_id=row.user_id,
            fields={
                "status": SubscriptionStatus.ACTIVE.value,
                "current_period_start": utcnow(),
                "current_period_end": _next_bill_date(event.payload),
            },
            renewal=payment_id is not None,
            payment=PaymentReference(PaymentProvider.PADDLE.value, payment_id) if payment_id else None,
        )
