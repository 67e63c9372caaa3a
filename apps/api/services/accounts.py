"""User account helpers shared by authenticated routers."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User

logger = logging.getLogger(__name__)


def placeholder_email(user_id: str) -> str:
    return f"{user_id}@local.invalid"


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _insert_user(db: AsyncSession, user_id: str, email: str) -> Optional[User]:
    """Insert the account; on a unique-key conflict roll back and return whoever won, if anyone."""
    user = User(id=user_id, email=email)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return await _get_user(db, user_id)
    return user


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the user row, creating a placeholder account on first sight.

    Concurrent first requests for one user converge on a single row. When the
    session's email already belongs to another account, the new account keeps
    a placeholder address instead.
    """
    user = await _get_user(db, user_id)
    if user:
        return user

    user = await _insert_user(db, user_id, email or placeholder_email(user_id))
    if user is None and email:
        logger.warning("Email for user %s is already registered to another account; using a placeholder", user_id)
        user = await _insert_user(db, user_id, placeholder_email(user_id))
    if user is None:
        raise RuntimeError(f"Could not create account for user {user_id}")
    return user
