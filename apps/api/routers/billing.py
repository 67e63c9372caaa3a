"""Billing, credits, and checkout router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import ensure_user
from services.checkout import (
    CHECKOUT_HANDLERS,
    PORTAL_HANDLERS,
    CheckoutProviderError,
    CheckoutUnavailableError,
    PaymentVerificationError,
    confirm_credit_purchase,
    create_credit_payment_intent,
    verify_fatora_payment,
)
from services.credits import (
    DuplicatePaymentError,
    credit_cost_table,
    get_credit_usage_history,
    get_user_credits,
    serialize_log_entry,
    serialize_snapshot,
)
from services.subscriptions import get_subscription, serialize_subscription

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditPurchaseRequest(BaseModel):
    credit_amount: int = Field(ge=1, le=1_000_000, alias="creditAmount")
    payment_intent_id: str = Field(min_length=1, max_length=255, alias="paymentIntentId")

    model_config = {"populate_by_name": True}


class CreditPaymentIntentRequest(BaseModel):
    credit_amount: int = Field(ge=1, le=1_000_000, alias="creditAmount")

    model_config = {"populate_by_name": True}


class FatoraVerifyRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=255, alias="orderId")
    transaction_id: Optional[str] = Field(default=None, max_length=255, alias="transactionId")

    model_config = {"populate_by_name": True}


class CheckoutRequest(BaseModel):
    plan: str = Field(default="Pro", alias="planName")

    model_config = {"populate_by_name": True}


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    snapshot = await get_user_credits(auth.user_id, db)
    if snapshot is None:
        raise HTTPException(status_code=503, detail="Credits are temporarily unavailable.")
    return {**serialize_snapshot(snapshot), "costs": credit_cost_table()}


@router.get("/credits/history")
async def credits_history(
    limit: int = Query(default=50, ge=1),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    capped = min(limit, settings.CREDIT_HISTORY_MAX_LIMIT)
    entries = await get_credit_usage_history(auth.user_id, db, limit=capped)
    return {"items": [serialize_log_entry(entry) for entry in entries]}


@router.post("/credits/payment-intent")
async def create_purchase_intent(
    request: CreditPaymentIntentRequest,
    _rate_limit: None = Depends(rate_limit("billing_payment_intent", limit=30, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    try:
        return await create_credit_payment_intent(auth.user_id, request.credit_amount)
    except CheckoutUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except CheckoutProviderError as exc:
        return JSONResponse(status_code=502, content={"error": str(exc)})


@router.post("/credits/purchase")
async def purchase_credits(
    request: CreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=30, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    try:
        snapshot = await confirm_credit_purchase(
            auth.user_id,
            request.credit_amount,
            request.payment_intent_id,
            db,
        )
    except DuplicatePaymentError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PaymentVerificationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CheckoutUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except CheckoutProviderError as exc:
        return JSONResponse(status_code=502, content={"error": str(exc)})
    if snapshot is None:
        raise HTTPException(status_code=500, detail="Failed to purchase credits")

    logger.info("User %s purchased %s credits (%s)", auth.user_id, request.credit_amount, request.payment_intent_id)
    return {
        "success": True,
        "creditsAdded": request.credit_amount,
        **serialize_snapshot(snapshot),
    }


@router.get("/subscription")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    row = await get_subscription(auth.user_id, db)
    return serialize_subscription(row)


@router.post("/checkout/{provider}")
async def create_checkout(
    provider: str,
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    handler = CHECKOUT_HANDLERS.get(provider.lower())
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")

    user = await ensure_user(db, auth.user_id, auth.email)
    try:
        return await handler(auth.user_id, user.email, request.plan, db)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CheckoutUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except CheckoutProviderError as exc:
        return JSONResponse(status_code=502, content={"error": str(exc)})


@router.post("/checkout/fatora/verify")
async def verify_fatora_checkout(
    request: FatoraVerifyRequest,
    _rate_limit: None = Depends(rate_limit("billing_verify", limit=30, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await verify_fatora_payment(auth.user_id, request.order_id, request.transaction_id, db)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CheckoutUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except CheckoutProviderError as exc:
        return JSONResponse(status_code=502, content={"error": str(exc)})


@router.post("/portal/{provider}")
async def create_portal(
    provider: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    handler = PORTAL_HANDLERS.get(provider.lower())
    if handler is None:
        raise HTTPException(status_code=404, detail=f"No billing portal for provider: {provider}")
    try:
        return await handler(auth.user_id, db)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CheckoutUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except CheckoutProviderError as exc:
        return JSONResponse(status_code=502, content={"error": str(exc)})
