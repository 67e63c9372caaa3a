"""Request-time credit gate for metered API routes."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import ensure_user
from services.credits import CreditActionType, CreditResult, CreditStatus, has_enough_credits

logger = logging.getLogger(__name__)

ROUTE_ACTIONS: Dict[str, CreditActionType] = {
    "/ai/generate": CreditActionType.TEXT_GENERATION,
    "/ai/generate-image": CreditActionType.IMAGE_GENERATION,
    "/ai/translate": CreditActionType.TRANSLATION,
    "/ai/grammar-check": CreditActionType.GRAMMAR_CHECK,
    "/ai/improve-content": CreditActionType.CONTENT_IMPROVEMENT,
}

INSUFFICIENT_CREDITS_MESSAGE = (
    "You don't have enough credits to perform this action. Please upgrade your plan or buy more credits."
)
CREDITS_UNAVAILABLE_MESSAGE = "Your credit balance could not be checked right now. Please try again shortly."


class InsufficientCreditsError(Exception):
    def __init__(self, action_type: Optional[CreditActionType] = None) -> None:
        super().__init__("Insufficient credits")
        self.action_type = action_type


class CreditsUnavailableError(Exception):
    def __init__(self, action_type: Optional[CreditActionType] = None) -> None:
        super().__init__("Credits unavailable")
        self.action_type = action_type


def action_for_path(path: str) -> Optional[CreditActionType]:
    return ROUTE_ACTIONS.get(path.rstrip("/") or "/")


def raise_for_credit_result(result: CreditResult, action_type: Optional[CreditActionType] = None) -> None:
    """Translate a failed credit check or debit into the matching gate error."""
    if result.status is CreditStatus.INSUFFICIENT:
        raise InsufficientCreditsError(action_type)
    if result.status is CreditStatus.STORE_UNAVAILABLE:
        raise CreditsUnavailableError(action_type)


async def credit_gate(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> None:
    """Reject a metered request before its handler runs when the balance cannot cover it."""
    path = request.url.path
    root_path = request.scope.get("root_path") or ""
    if root_path and path.startswith(root_path):
        path = path[len(root_path):]

    action_type = action_for_path(path)
    if action_type is None:
        return

    await ensure_user(db, auth.user_id, auth.email)
    result = await has_enough_credits(auth.user_id, action_type, db)
    if not result:
        logger.warning(
            "User %s attempted to use %s but credit check returned %s",
            auth.user_id,
            path,
            result.status.value,
        )
        raise_for_credit_result(result, action_type)


async def _insufficient_credits_handler(request: Request, exc: InsufficientCreditsError) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "error": "Insufficient credits",
            "message": INSUFFICIENT_CREDITS_MESSAGE,
            "code": "INSUFFICIENT_CREDITS",
        },
    )


async def _credits_unavailable_handler(request: Request, exc: CreditsUnavailableError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": "Credits unavailable",
            "message": CREDITS_UNAVAILABLE_MESSAGE,
            "code": "CREDITS_UNAVAILABLE",
        },
    )


def install_credit_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InsufficientCreditsError, _insufficient_credits_handler)
    app.add_exception_handler(CreditsUnavailableError, _credits_unavailable_handler)
