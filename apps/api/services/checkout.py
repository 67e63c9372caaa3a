"""Checkout, billing portals and payment confirmation for Stripe, Paddle and Fatora."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.payment_order import PaymentOrder
from services.credits import CreditSnapshot, add_purchased_credits
from services.payments.fatora_adapter import build_payment_update, price_for_plan
from services.processed_payments import payment_already_processed
from services.subscriptions import (
    PaymentProvider,
    Plan,
    apply_subscription_update,
    begin_checkout,
    get_subscription,
    normalize_plan,
)

logger = logging.getLogger(__name__)


class CheckoutUnavailableError(RuntimeError):
    """Raised when a provider is not configured for checkout."""


class CheckoutProviderError(RuntimeError):
    """Raised when the provider rejects or fails a checkout request."""


class PaymentVerificationError(ValueError):
    """Raised when a provider's record of a payment does not match what the client claims."""


def _billing_url(query: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/dashboard/billing?{query}"


def _paid_plan(plan: str) -> str:
    normalized = normalize_plan(plan, default=Plan.PRO)
    if normalized == Plan.FREE.value:
        raise ValueError("Checkout requires a paid plan (Pro or Business).")
    return normalized


def stripe_price_for_plan(plan: str) -> str:
    if plan == Plan.BUSINESS.value:
        return settings.STRIPE_PRICE_ID_BUSINESS
    return settings.STRIPE_PRICE_ID_PRO


def paddle_product_for_plan(plan: str) -> str:
    if plan == Plan.BUSINESS.value:
        return settings.PADDLE_PRODUCT_ID_BUSINESS
    return settings.PADDLE_PRODUCT_ID_PRO


def build_order_id(user_id: str, now_ms: int = 0) -> str:
    return f"order_{now_ms or int(time.time() * 1000)}_{user_id[:8]}"


async def create_stripe_checkout(user_id: str, email: str, plan: str, db: AsyncSession) -> Dict[str, Any]:
    plan = _paid_plan(plan)
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    price_id = stripe_price_for_plan(plan)
    if not api_key or not price_id:
        raise CheckoutUnavailableError("Stripe is not configured.")

    existing = await get_subscription(user_id, db)
    customer_id = existing.stripe_customer_id if existing else None

    try:
        if not customer_id:
            logger.info("Creating new Stripe customer for user %s", user_id)
            customer = await asyncio.to_thread(
                stripe.Customer.create,
                api_key=api_key,
                email=email,
                metadata={"userId": user_id},
            )
            customer_id = customer["id"]

        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=api_key,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            client_reference_id=user_id,
            metadata={"userId": user_id, "planName": plan},
            subscription_data={"metadata": {"userId": user_id}},
            success_url=_billing_url("success=true&provider=stripe"),
            cancel_url=_billing_url("canceled=true&provider=stripe"),
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout failed for user %s: %s", user_id, exc)
        raise CheckoutProviderError("Failed to create Stripe checkout session") from exc

    await begin_checkout(user_id, PaymentProvider.STRIPE, plan, db, stripe_customer_id=customer_id)
    return {"url": session["url"], "sessionId": session["id"], "provider": PaymentProvider.STRIPE.value}


async def create_paddle_checkout(user_id: str, email: str, plan: str, db: AsyncSession) -> Dict[str, Any]:
    plan = _paid_plan(plan)
    product_id = paddle_product_for_plan(plan)
    if not settings.PADDLE_VENDOR_ID or not product_id:
        raise CheckoutUnavailableError("Paddle is not configured.")

    await begin_checkout(user_id, PaymentProvider.PADDLE, plan, db)
    return {
        "provider": PaymentProvider.PADDLE.value,
        "vendorId": settings.PADDLE_VENDOR_ID,
        "productId": product_id,
        "email": email,
        "passthrough": json.dumps({"userId": user_id, "planName": plan}),
        "successUrl": _billing_url("success=true&provider=paddle"),
    }


def _fatora_checkout_url(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    return str(result.get("checkout_url") or payload.get("checkout_url") or payload.get("url") or "")


async def create_fatora_checkout(user_id: str, email: str, plan: str, db: AsyncSession) -> Dict[str, Any]:
    plan = _paid_plan(plan)
    api_key = (settings.FATORA_API_KEY or "").strip()
    if not api_key:
        raise CheckoutUnavailableError("Fatora API key is not configured")

    amount = price_for_plan(plan)
    order_id = build_order_id(user_id)
    await begin_checkout(user_id, PaymentProvider.FATORA, plan, db)
    try:
        db.add(
            PaymentOrder(
                order_id=order_id,
                user_id=user_id,
                provider=PaymentProvider.FATORA.value,
                plan=plan,
                amount=amount,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Failed to record Fatora order %s: %s", order_id, exc)
        raise CheckoutProviderError("Failed to record checkout order") from exc

    request_body = {
        "amount": amount,
        "currency": "QAR",
        "order_id": order_id,
        "client": {"name": email.split("@", 1)[0], "email": email},
        "language": "en",
        "success_url": _billing_url("success=true&provider=fatora"),
        "failure_url": _billing_url("canceled=true&provider=fatora"),
        "note": f"Subscription to {plan} plan",
    }
    try:
        async with httpx.AsyncClient(timeout=settings.FATORA_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.FATORA_API_URL,
                json=request_body,
                headers={"api_key": api_key, "Accept": "application/json"},
            )
        response.raise_for_status()
        checkout_url = _fatora_checkout_url(response.json())
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Fatora checkout error for order %s: %s", order_id, exc)
        raise CheckoutProviderError("Failed to create checkout session") from exc

    if not checkout_url:
        logger.error("Fatora checkout response for order %s had no checkout URL", order_id)
        raise CheckoutProviderError("Failed to create checkout session")

    logger.info("Created Fatora checkout for user %s order %s", user_id, order_id)
    return {"url": checkout_url, "orderId": order_id, "provider": PaymentProvider.FATORA.value}


CHECKOUT_HANDLERS = {
    PaymentProvider.STRIPE.value: create_stripe_checkout,
    PaymentProvider.PADDLE.value: create_paddle_checkout,
    PaymentProvider.FATORA.value: create_fatora_checkout,
}


def credit_purchase_amount(credits: int) -> int:
    return int(credits) * max(int(settings.CREDIT_PURCHASE_UNIT_AMOUNT), 1)


def _stripe_api_key() -> str:
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not api_key:
        raise CheckoutUnavailableError("Stripe is not configured.")
    return api_key


async def create_credit_payment_intent(user_id: str, credits: int) -> Dict[str, Any]:
    """Start a one-off Stripe payment for a credit pack, tagged with the buyer and the pack size."""
    api_key = _stripe_api_key()
    amount = credit_purchase_amount(credits)
    try:
        intent = await asyncio.to_thread(
            stripe.PaymentIntent.create,
            api_key=api_key,
            amount=amount,
            currency=settings.CREDIT_PURCHASE_CURRENCY,
            automatic_payment_methods={"enabled": True},
            metadata={"userId": user_id, "credits": str(int(credits))},
        )
    except stripe.StripeError as exc:
        logger.error("Stripe payment intent failed for user %s: %s", user_id, exc)
        raise CheckoutProviderError("Failed to create payment") from exc

    return {
        "paymentIntentId": intent["id"],
        "clientSecret": intent["client_secret"],
        "amount": amount,
        "currency": settings.CREDIT_PURCHASE_CURRENCY,
        "creditAmount": int(credits),
    }


async def confirm_credit_purchase(
    user_id: str,
    credits: int,
    payment_intent_id: str,
    db: AsyncSession,
) -> Optional[CreditSnapshot]:
    """Grant purchased credits once Stripe confirms the PaymentIntent paid for exactly this pack."""
    api_key = _stripe_api_key()
    try:
        intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_intent_id, api_key=api_key)
    except stripe.InvalidRequestError as exc:
        logger.warning("Unknown PaymentIntent %s from user %s: %s", payment_intent_id, user_id, exc)
        raise PaymentVerificationError("Unknown payment") from exc
    except stripe.StripeError as exc:
        logger.error("Stripe PaymentIntent lookup failed for %s: %s", payment_intent_id, exc)
        raise CheckoutProviderError("Failed to verify payment") from exc

    metadata = intent.get("metadata") or {}
    if intent.get("status") != "succeeded":
        raise PaymentVerificationError("Payment has not succeeded")
    if metadata.get("userId") != user_id:
        logger.warning("PaymentIntent %s does not belong to user %s", payment_intent_id, user_id)
        raise PaymentVerificationError("Payment does not belong to this user")
    paid = int(intent.get("amount_received") or 0)
    if (
        str(metadata.get("credits")) != str(int(credits))
        or intent.get("currency") != settings.CREDIT_PURCHASE_CURRENCY
        or paid < credit_purchase_amount(credits)
    ):
        logger.warning("PaymentIntent %s does not cover %s credits", payment_intent_id, credits)
        raise PaymentVerificationError("Payment amount does not match the requested credits")

    return await add_purchased_credits(
        user_id,
        credits,
        db,
        payment_reference=payment_intent_id,
        payment_provider=PaymentProvider.STRIPE.value,
    )


async def create_stripe_portal(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    api_key = _stripe_api_key()
    row = await get_subscription(user_id, db)
    if row is None or not row.stripe_customer_id:
        raise LookupError("Customer not found")

    try:
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            api_key=api_key,
            customer=row.stripe_customer_id,
            return_url=f"{settings.APP_URL.rstrip('/')}/dashboard/billing",
        )
    except stripe.StripeError as exc:
        logger.error("Stripe portal session failed for user %s: %s", user_id, exc)
        raise CheckoutProviderError("Failed to create portal session") from exc
    return {"url": session["url"], "provider": PaymentProvider.STRIPE.value}


def _paddle_portal_url(payload: Any) -> str:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return ""
    general = (data.get("urls") or {}).get("general") or {}
    return str(general.get("overview") or data.get("url") or "")


async def create_paddle_portal(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    api_key = (settings.PADDLE_API_KEY or "").strip()
    if not api_key:
        raise CheckoutUnavailableError("Paddle API key is not configured")
    row = await get_subscription(user_id, db)
    if row is None or row.payment_provider != PaymentProvider.PADDLE.value or not row.paddle_customer_id:
        raise LookupError("Paddle customer not found")

    body: Dict[str, Any] = {}
    if row.paddle_subscription_id:
        body["subscription_ids"] = [row.paddle_subscription_id]
    try:
        async with httpx.AsyncClient(timeout=settings.PADDLE_TIMEOUT_SECONDS) as client:
            response = await client.post(
                f"{settings.PADDLE_API_URL.rstrip('/')}/customers/{row.paddle_customer_id}/portal-sessions",
                json=body,
                headers={"Authorization": f"Bearer {api_key}"},
            )
        response.raise_for_status()
        portal_url = _paddle_portal_url(response.json())
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Paddle portal session failed for user %s: %s", user_id, exc)
        raise CheckoutProviderError("Failed to create portal session") from exc

    if not portal_url:
        raise CheckoutProviderError("Failed to create portal session")
    return {"url": portal_url, "provider": PaymentProvider.PADDLE.value}


async def verify_fatora_payment(
    user_id: str,
    order_id: str,
    transaction_id: Optional[str],
    db: AsyncSession,
) -> Dict[str, Any]:
    """Ask Fatora whether an order was paid and, if so, apply it exactly as its webhook would."""
    order = await db.get(PaymentOrder, order_id)
    if order is None or order.user_id != user_id:
        raise LookupError("Order not found")
    api_key = (settings.FATORA_API_KEY or "").strip()
    if not api_key:
        raise CheckoutUnavailableError("Fatora API key is not configured")

    logger.info("Verifying Fatora payment for order: %s", order_id)
    request_body: Dict[str, Any] = {"order_id": order_id}
    if transaction_id:
        request_body["transaction_id"] = transaction_id
    try:
        async with httpx.AsyncClient(timeout=settings.FATORA_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.FATORA_VERIFY_URL,
                json=request_body,
                headers={"api_key": api_key, "Accept": "application/json"},
            )
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Fatora verification error for order %s: %s", order_id, exc)
        raise CheckoutProviderError("Failed to verify payment") from exc

    result = payload.get("result") if isinstance(payload, dict) else None
    if not isinstance(result, dict) or payload.get("status") != "SUCCESS":
        logger.error("Payment verification failed for order %s: %s", order_id, payload)
        return {"verified": False, "error": "Payment verification failed"}

    payment_status = result.get("payment_status")
    if payment_status != "SUCCESS":
        logger.info("Fatora order %s not paid: %s", order_id, payment_status)
        return {
            "verified": False,
            "status": payment_status,
            "message": "Payment has not been completed successfully",
        }

    update = await build_payment_update(
        order_id,
        result.get("amount"),
        result.get("transaction_id") or transaction_id,
        db,
    )
    if update is None:
        return {"verified": True, "updated": False, "error": "Payment does not match the order"}

    already_processed = await payment_already_processed(update.payment, db)
    row = await apply_subscription_update(update, db)
    if row is None:
        return {"verified": True, "updated": False, "error": "Failed to update subscription"}
    return {
        "verified": True,
        "updated": not already_processed,
        "plan": row.plan,
        "orderId": order_id,
        "transactionId": row.transaction_id,
    }


PORTAL_HANDLERS = {
    PaymentProvider.STRIPE.value: create_stripe_portal,
    PaymentProvider.PADDLE.value: create_paddle_portal,
}
