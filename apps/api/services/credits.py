"""Credit metering: cost table, balance checks, atomic debits, and the usage log."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_log import CreditLogEntry
from services.processed_payments import PaymentReference, payment_already_processed, record_payment

logger = logging.getLogger(__name__)


class CreditActionType(str, enum.Enum):
    TEXT_GENERATION = "text_generation"
    IMAGE_GENERATION = "image_generation"
    TRANSLATION = "translation"
    GRAMMAR_CHECK = "grammar_check"
    CONTENT_IMPROVEMENT = "content_improvement"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    PLAN_UPGRADE = "plan_upgrade"
    PLAN_RENEWAL = "plan_renewal"


# Administrative action types are free and therefore absent.
CREDIT_COSTS: Dict[str, int] = {
    CreditActionType.TEXT_GENERATION.value: 10,
    CreditActionType.IMAGE_GENERATION.value: 50,
    CreditActionType.TRANSLATION.value: 5,
    CreditActionType.GRAMMAR_CHECK.value: 3,
    CreditActionType.CONTENT_IMPROVEMENT.value: 15,
}

ActionLike = Union[CreditActionType, str]


class CreditStatus(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT = "insufficient_credits"
    STORE_UNAVAILABLE = "store_unavailable"


class DuplicatePaymentError(ValueError):
    """Raised when a payment reference has already been credited."""


@dataclass(frozen=True)
class CreditSnapshot:
    user_id: str
    total_credits: int
    used_credits: int
    reset_date: Optional[datetime] = None

    @property
    def available(self) -> int:
        return self.total_credits - self.used_credits

    @property
    def remaining(self) -> int:
        return max(0, self.available)


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a credit check or debit.

    Truthy only for ``CreditStatus.OK`` so boolean call sites keep reading
    naturally, while callers that need to tell insufficient credits apart from
    an unreachable store can inspect ``status``.
    """

    status: CreditStatus
    cost: int = 0
    balance: Optional[CreditSnapshot] = None

    def __bool__(self) -> bool:
        return self.status is CreditStatus.OK


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _action_value(action_type: ActionLike) -> str:
    if isinstance(action_type, CreditActionType):
        return action_type.value
    return str(action_type or "")


def credit_cost(action_type: ActionLike) -> int:
    """Fixed cost for an action type; unknown types are free."""
    return max(int(CREDIT_COSTS.get(_action_value(action_type), 0)), 0)


def credit_cost_table() -> Dict[str, int]:
    return {action.value: credit_cost(action) for action in CreditActionType}


def next_reset_date(now: Optional[datetime] = None) -> datetime:
    """First day of the next calendar month at midnight UTC."""
    current = now or _utcnow()
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


def _snapshot(row: CreditBalance) -> CreditSnapshot:
    return CreditSnapshot(
        user_id=row.user_id,
        total_credits=int(row.total_credits or 0),
        used_credits=int(row.used_credits or 0),
        reset_date=_as_aware(row.reset_date),
    )


async def _fetch_balance(user_id: str, db: AsyncSession) -> Optional[CreditBalance]:
    result = await db.execute(
        select(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _log_entry(
    user_id: str,
    action_type: ActionLike,
    credits_used: int,
    description: Optional[str],
) -> CreditLogEntry:
    return CreditLogEntry(
        user_id=user_id,
        action_type=_action_value(action_type),
        credits_used=int(credits_used),
        description=description,
        created_at=_utcnow(),
    )


async def initialize_user_credits(
    user_id: str,
    db: AsyncSession,
    plan_credits: Optional[int] = None,
) -> Optional[CreditSnapshot]:
    """Return the user's balance, creating it with ``plan_credits`` if absent.

    Safe to call repeatedly. A balance whose reset date has passed is renewed
    with its current ceiling before being returned. Returns ``None`` when the
    store cannot be read or written.
    """
    allotment = settings.DEFAULT_CREDIT_ALLOTMENT if plan_credits is None else plan_credits
    try:
        existing = await _fetch_balance(user_id, db)
        if existing is not None:
            snapshot = _snapshot(existing)
            if snapshot.reset_date is not None and snapshot.reset_date <= _utcnow():
                if await reset_user_credits(user_id, snapshot.total_credits, db):
                    renewed = await _fetch_balance(user_id, db)
                    if renewed is not None:
                        return _snapshot(renewed)
            return snapshot

        total = max(int(allotment), 0)
        db.add(CreditBalance(user_id=user_id, total_credits=total, used_credits=0, reset_date=None))
        await db.commit()
        logger.info("credits_initialized user=%s total=%s", user_id, total)
        return CreditSnapshot(user_id=user_id, total_credits=total, used_credits=0, reset_date=None)
    except IntegrityError as exc:
        await db.rollback()
        # Either a concurrent request created the row first, or the user does not exist.
        try:
            existing = await _fetch_balance(user_id, db)
        except SQLAlchemyError as fetch_exc:
            await db.rollback()
            logger.error("Error re-reading credits for user=%s: %s", user_id, fetch_exc)
            return None
        if existing is None:
            logger.error("Error creating credits for user=%s: %s", user_id, exc)
            return None
        return _snapshot(existing)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error initializing credits for user=%s: %s", user_id, exc)
        return None


async def get_user_credits(user_id: str, db: AsyncSession) -> Optional[CreditSnapshot]:
    """Current balance; never reports "not found" because absent rows are initialized."""
    return await initialize_user_credits(user_id, db)


async def has_enough_credits(user_id: str, action_type: ActionLike, db: AsyncSession) -> CreditResult:
    cost = credit_cost(action_type)
    if cost == 0:
        return CreditResult(status=CreditStatus.OK, cost=0)

    snapshot = await initialize_user_credits(user_id, db)
    if snapshot is None:
        return CreditResult(status=CreditStatus.STORE_UNAVAILABLE, cost=cost)

    status = CreditStatus.OK if snapshot.available >= cost else CreditStatus.INSUFFICIENT
    return CreditResult(status=status, cost=cost, balance=snapshot)


async def consume_credits(
    user_id: str,
    action_type: ActionLike,
    db: AsyncSession,
    description: Optional[str] = None,
) -> CreditResult:
    """Debit the action's cost and append a log entry.

    The sufficiency check and the debit are one conditional UPDATE, so
    concurrent debits can never push ``used_credits`` past ``total_credits``.
    Nothing is mutated unless the result is OK.
    """
    cost = credit_cost(action_type)
    if cost == 0:
        return CreditResult(status=CreditStatus.OK, cost=0)

    if await initialize_user_credits(user_id, db) is None:
        return CreditResult(status=CreditStatus.STORE_UNAVAILABLE, cost=cost)

    try:
        result = await db.execute(
            update(CreditBalance)
            .where(
                CreditBalance.user_id == user_id,
                CreditBalance.used_credits + cost <= CreditBalance.total_credits,
            )
            .values(used_credits=CreditBalance.used_credits + cost, updated_at=func.now())
            .returning(CreditBalance.total_credits, CreditBalance.used_credits, CreditBalance.reset_date)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await db.rollback()
            logger.warning(
                "credits_insufficient user=%s action=%s cost=%s",
                user_id,
                _action_value(action_type),
                cost,
            )
            return CreditResult(status=CreditStatus.INSUFFICIENT, cost=cost)

        db.add(_log_entry(user_id, action_type, cost, description))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error using credits for user=%s: %s", user_id, exc)
        return CreditResult(status=CreditStatus.STORE_UNAVAILABLE, cost=cost)

    snapshot = CreditSnapshot(
        user_id=user_id,
        total_credits=int(row.total_credits),
        used_credits=int(row.used_credits),
        reset_date=_as_aware(row.reset_date),
    )
    logger.info(
        "credits_consumed user=%s action=%s cost=%s used=%s/%s",
        user_id,
        _action_value(action_type),
        cost,
        snapshot.used_credits,
        snapshot.total_credits,
    )
    return CreditResult(status=CreditStatus.OK, cost=cost, balance=snapshot)


async def update_total_credits(
    user_id: str,
    new_total: int,
    db: AsyncSession,
    *,
    log_action: CreditActionType = CreditActionType.PLAN_UPGRADE,
    description: Optional[str] = None,
) -> bool:
    """Overwrite the credit ceiling and schedule the next monthly reset."""
    if await initialize_user_credits(user_id, db) is None:
        return False

    total = max(int(new_total), 0)
    try:
        await db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(total_credits=total, reset_date=next_reset_date(), updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        db.add(_log_entry(user_id, log_action, 0, description or f"Updated total credits to {total}"))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error updating total credits for user=%s: %s", user_id, exc)
        return False
    return True


async def reset_user_credits(user_id: str, new_total: int, db: AsyncSession) -> bool:
    """Start a new period: zero usage, set the ceiling, advance the reset date."""
    total = max(int(new_total), 0)
    try:
        result = await db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(
                total_credits=total,
                used_credits=0,
                reset_date=next_reset_date(),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            db.add(
                CreditBalance(
                    user_id=user_id,
                    total_credits=total,
                    used_credits=0,
                    reset_date=next_reset_date(),
                )
            )
        db.add(_log_entry(user_id, CreditActionType.PLAN_RENEWAL, 0, f"Reset credits to {total}"))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error resetting credits for user=%s: %s", user_id, exc)
        return False
    logger.info("credits_reset user=%s total=%s", user_id, total)
    return True


async def add_purchased_credits(
    user_id: str,
    credits: int,
    db: AsyncSession,
    *,
    payment_reference: Optional[str] = None,
    payment_provider: str = "stripe",
) -> Optional[CreditSnapshot]:
    """Raise the ceiling by a purchased amount in a single atomic increment.

    A ``payment_reference`` is recorded in the same transaction as the grant,
    so one payment can only ever be credited once.
    """
    grant = int(credits)
    if grant <= 0:
        raise ValueError("credits must be greater than 0")
    payment = PaymentReference(payment_provider, payment_reference) if payment_reference else None
    if payment is not None and await payment_already_processed(payment, db):
        raise DuplicatePaymentError(f"Payment {payment_reference} has already been credited")
    if await initialize_user_credits(user_id, db) is None:
        return None

    try:
        await db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(
                total_credits=CreditBalance.total_credits + grant,
                reset_date=next_reset_date(),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if payment is not None:
            record_payment(payment, user_id, db)
        db.add(
            _log_entry(
                user_id,
                CreditActionType.MANUAL_ADJUSTMENT,
                0,
                f"Purchased {grant} credits. Payment ID: {payment_reference or 'N/A'}",
            )
        )
        await db.commit()
        row = await _fetch_balance(user_id, db)
    except IntegrityError as exc:
        await db.rollback()
        if payment is not None:
            raise DuplicatePaymentError(f"Payment {payment_reference} has already been credited") from exc
        logger.error("Error adding purchased credits for user=%s: %s", user_id, exc)
        return None
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error adding purchased credits for user=%s: %s", user_id, exc)
        return None
    return _snapshot(row) if row is not None else None


async def log_credit_usage(
    user_id: str,
    action_type: ActionLike,
    credits_used: int,
    db: AsyncSession,
    description: Optional[str] = None,
) -> bool:
    try:
        db.add(_log_entry(user_id, action_type, credits_used, description))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error logging credit usage for user=%s: %s", user_id, exc)
        return False
    return True


async def get_credit_usage_history(user_id: str, db: AsyncSession, limit: int = 50) -> List[CreditLogEntry]:
    """Most recent log entries, newest first."""
    try:
        result = await db.execute(
            select(CreditLogEntry)
            .where(CreditLogEntry.user_id == user_id)
            .order_by(CreditLogEntry.created_at.desc(), CreditLogEntry.id.desc())
            .limit(max(int(limit), 0))
        )
        return list(result.scalars().all())
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Error fetching credit usage history for user=%s: %s", user_id, exc)
        return []


async def get_remaining_credits(user_id: str, db: AsyncSession) -> int:
    snapshot = await get_user_credits(user_id, db)
    if snapshot is None:
        return 0
    return snapshot.remaining


def serialize_log_entry(entry: CreditLogEntry) -> Dict[str, Any]:
    created_at = _as_aware(entry.created_at)
    return {
        "id": entry.id,
        "actionType": entry.action_type,
        "creditsUsed": entry.credits_used,
        "description": entry.description,
        "createdAt": created_at.isoformat() if created_at else None,
    }


def serialize_snapshot(snapshot: CreditSnapshot) -> Dict[str, Any]:
    return {
        "totalCredits": snapshot.total_credits,
        "usedCredits": snapshot.used_credits,
        "remainingCredits": snapshot.remaining,
        "resetDate": snapshot.reset_date.isoformat() if snapshot.reset_date else None,
    }
