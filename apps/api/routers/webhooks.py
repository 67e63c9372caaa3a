"""Payment provider webhook endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.payments import (
    ProviderKey,
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookVerificationError,
    get_payment_adapter,
)

router = APIRouter()
logger = logging.getLogger(__name__)

# Stripe has always answered a bad signature with 400; Fatora with 401.
VERIFICATION_STATUS = {"stripe": 400, "paddle": 400, "fatora": 401}


async def handle_provider_webhook(provider: ProviderKey, request: Request, db: AsyncSession) -> JSONResponse:
    """Verify, parse, and apply one provider delivery, mapping failures to JSON errors."""
    adapter = get_payment_adapter(provider)
    raw_body = await request.body()
    try:
        await adapter.reconcile(raw_body, request.headers, db)
    except WebhookConfigurationError as exc:
        logger.error("%s webhook misconfigured: %s", provider, exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})
    except WebhookVerificationError as exc:
        return JSONResponse(status_code=VERIFICATION_STATUS[provider], content={"error": str(exc)})
    except WebhookPayloadError as exc:
        logger.error("%s webhook payload rejected: %s", provider, exc)
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except Exception as exc:
        logger.exception("Error processing %s webhook: %s", provider, exc)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
    return JSONResponse(status_code=200, content=adapter.acknowledgement)


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await handle_provider_webhook("stripe", request, db)


@router.post("/paddle")
async def paddle_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await handle_provider_webhook("paddle", request, db)


@router.post("/fatora")
async def fatora_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    return await handle_provider_webhook("fatora", request, db)
