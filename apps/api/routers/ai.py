"""Metered AI generation endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.credit_gate import credit_gate, raise_for_credit_result
from routers.rate_limit import rate_limit
from services.credits import CreditActionType, CreditResult, consume_credits
from services.generation import (
    GenerationError,
    GenerationUnavailableError,
    check_grammar,
    generate_image,
    generate_text,
    improve_content,
    translate_text,
)

router = APIRouter(dependencies=[Depends(credit_gate)])
logger = logging.getLogger(__name__)


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=8000)
    template_id: Optional[str] = Field(default=None, alias="templateId")

    model_config = {"populate_by_name": True}


class GenerateImageRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    style: Optional[str] = None
    dimensions: str = "1024x1024"


class TranslateRequest(BaseModel):
    text: str = Field(min_length=1, max_length=8000)
    target_language: str = Field(min_length=1, max_length=64, alias="targetLanguage")
    source_language: Optional[str] = Field(default=None, max_length=64, alias="sourceLanguage")

    model_config = {"populate_by_name": True}


class TextRequest(BaseModel):
    text: str = Field(min_length=1, max_length=8000)
    instructions: Optional[str] = Field(default=None, max_length=2000)


def _excerpt(value: str, length: int = 50) -> str:
    return value if len(value) <= length else f"{value[:length]}..."


def _credit_payload(result: CreditResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"creditsUsed": result.cost}
    if result.balance is not None:
        payload["remainingCredits"] = result.balance.remaining
    return payload


async def _debit(
    auth: AuthContext,
    action_type: CreditActionType,
    description: str,
    db: AsyncSession,
) -> CreditResult:
    result = await consume_credits(auth.user_id, action_type, db, description=description)
    if not result:
        logger.warning("Debit for %s failed for user %s: %s", action_type.value, auth.user_id, result.status.value)
        raise_for_credit_result(result, action_type)
    return result


def _generation_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, GenerationUnavailableError):
        return HTTPException(status_code=503, detail="AI service is not configured")
    return HTTPException(status_code=500, detail=str(exc) or "Failed to generate content. Please try again later.")


@router.post("/generate")
async def generate(
    request: GenerateRequest,
    _rate_limit: None = Depends(rate_limit("ai_generate", limit=60, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    logger.info("Generating content for user %s (template=%s)", auth.user_id, request.template_id or "custom")
    try:
        content = await generate_text(request.prompt)
    except (GenerationUnavailableError, GenerationError) as exc:
        raise _generation_http_error(exc) from exc

    result = await _debit(
        auth,
        CreditActionType.TEXT_GENERATION,
        f"Generated content using template: {request.template_id or 'custom'}",
        db,
    )
    return {"content": content, **_credit_payload(result)}


@router.post("/generate-image")
async def generate_image_endpoint(
    request: GenerateImageRequest,
    _rate_limit: None = Depends(rate_limit("ai_generate_image", limit=20, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        image = await generate_image(request.prompt, style=request.style, size=request.dimensions)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (GenerationUnavailableError, GenerationError) as exc:
        raise _generation_http_error(exc) from exc

    result = await _debit(
        auth,
        CreditActionType.IMAGE_GENERATION,
        f'Generated image: "{_excerpt(request.prompt)}" ({request.dimensions})',
        db,
    )
    return {**image, **_credit_payload(result)}


@router.post("/translate")
async def translate(
    request: TranslateRequest,
    _rate_limit: None = Depends(rate_limit("ai_translate", limit=60, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        translation = await translate_text(request.text, request.target_language, request.source_language)
    except (GenerationUnavailableError, GenerationError) as exc:
        raise _generation_http_error(exc) from exc

    result = await _debit(
        auth,
        CreditActionType.TRANSLATION,
        f"Translated text to {request.target_language}",
        db,
    )
    return {"translation": translation, **_credit_payload(result)}


@router.post("/grammar-check")
async def grammar_check(
    request: TextRequest,
    _rate_limit: None = Depends(rate_limit("ai_grammar", limit=60, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        corrected = await check_grammar(request.text)
    except (GenerationUnavailableError, GenerationError) as exc:
        raise _generation_http_error(exc) from exc

    result = await _debit(auth, CreditActionType.GRAMMAR_CHECK, "Checked grammar", db)
    return {"correctedText": corrected, **_credit_payload(result)}


@router.post("/improve-content")
async def improve(
    request: TextRequest,
    _rate_limit: None = Depends(rate_limit("ai_improve", limit=60, window_seconds=3600, per_user=True)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        improved = await improve_content(request.text, request.instructions)
    except (GenerationUnavailableError, GenerationError) as exc:
        raise _generation_http_error(exc) from exc

    result = await _debit(auth, CreditActionType.CONTENT_IMPROVEMENT, "Improved content", db)
    return {"content": improved, **_credit_payload(result)}
