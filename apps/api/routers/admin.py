"""Administrative credit management."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, require_admin
from services.credits import (
    CreditActionType,
    get_credit_usage_history,
    get_user_credits,
    reset_user_credits,
    serialize_log_entry,
    serialize_snapshot,
    update_total_credits,
)
from services.subscriptions import get_subscription, serialize_subscription

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTotalRequest(BaseModel):
    total_credits: int = Field(ge=0, le=10_000_000, alias="totalCredits")

    model_config = {"populate_by_name": True}


async def _require_target(user_id: str, db: AsyncSession) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def _balance_payload(user_id: str, db: AsyncSession) -> dict:
    snapshot = await get_user_credits(user_id, db)
    if snapshot is None:
        raise HTTPException(status_code=503, detail="Credits are temporarily unavailable.")
    return {"userId": user_id, **serialize_snapshot(snapshot)}


@router.get("/credits/{user_id}")
async def get_credits(
    user_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _require_target(user_id, db)
    payload = await _balance_payload(user_id, db)
    history = await get_credit_usage_history(user_id, db, limit=20)
    payload["subscription"] = serialize_subscription(await get_subscription(user_id, db))
    payload["history"] = [serialize_log_entry(entry) for entry in history]
    return payload


@router.post("/credits/{user_id}/adjust")
async def adjust_credits(
    user_id: str,
    request: CreditTotalRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _require_target(user_id, db)
    updated = await update_total_credits(
        user_id,
        request.total_credits,
        db,
        log_action=CreditActionType.MANUAL_ADJUSTMENT,
        description=f"Admin {admin.user_id} set total credits to {request.total_credits}",
    )
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to update credits")
    logger.info("Admin %s set total credits for %s to %s", admin.user_id, user_id, request.total_credits)
    return await _balance_payload(user_id, db)


@router.post("/credits/{user_id}/reset")
async def reset_credits(
    user_id: str,
    request: CreditTotalRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _require_target(user_id, db)
    if not await reset_user_credits(user_id, request.total_credits, db):
        raise HTTPException(status_code=500, detail="Failed to reset credits")
    logger.info("Admin %s reset credits for %s to %s", admin.user_id, user_id, request.total_credits)
    return await _balance_payload(user_id, db)
