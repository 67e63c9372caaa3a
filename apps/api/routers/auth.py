"""
Authenticated user profile endpoint.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import ensure_user
from services.credits import get_remaining_credits
from services.subscriptions import entitled_plan, get_subscription

router = APIRouter()


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    is_admin: bool = False
    plan: str
    subscription_status: Optional[str] = None
    remaining_credits: int


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get the current user with their plan and remaining credits."""
    user = await ensure_user(db, auth.user_id, auth.email)
    subscription = await get_subscription(auth.user_id, db)
    status = subscription.status if subscription else None

    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        is_admin=bool(user.is_admin),
        plan=entitled_plan(subscription.plan if subscription else None, status),
        subscription_status=status,
        remaining_credits=await get_remaining_credits(auth.user_id, db),
    )
