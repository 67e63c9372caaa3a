from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from models.credit_balance import CreditBalance
from models.credit_log import CreditLogEntry
from services.credits import (
    CreditActionType,
    CreditResult,
    CreditStatus,
    DuplicatePaymentError,
    add_purchased_credits,
    consume_credits,
    credit_cost,
    get_credit_usage_history,
    get_remaining_credits,
    has_enough_credits,
    initialize_user_credits,
    log_credit_usage,
    next_reset_date,
    reset_user_credits,
    update_total_credits,
)


USER_ID = "credits-user-0001"


async def _set_usage(session_maker, user_id, total, used, reset_date=None):
    async with session_maker() as session:
        await session.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(total_credits=total, used_credits=used, reset_date=reset_date)
        )
        await session.commit()


async def _balance_row(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(select(CreditBalance).where(CreditBalance.user_id == user_id))
        return result.scalar_one_or_none()


async def _log_rows(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditLogEntry).where(CreditLogEntry.user_id == user_id).order_by(CreditLogEntry.created_at)
        )
        return list(result.scalars().all())


def test_cost_table_is_fixed_and_unknown_actions_are_free():
    assert credit_cost(CreditActionType.TEXT_GENERATION) == 10
    assert credit_cost(CreditActionType.IMAGE_GENERATION) == 50
    assert credit_cost(CreditActionType.TRANSLATION) == 5
    assert credit_cost(CreditActionType.GRAMMAR_CHECK) == 3
    assert credit_cost(CreditActionType.CONTENT_IMPROVEMENT) == 15
    assert credit_cost("grammar_check") == 3
    for admin_action in (
        CreditActionType.MANUAL_ADJUSTMENT,
        CreditActionType.PLAN_UPGRADE,
        CreditActionType.PLAN_RENEWAL,
    ):
        assert credit_cost(admin_action) == 0
    assert credit_cost("video_generation") == 0
    assert credit_cost(None) == 0


def test_next_reset_date_is_first_of_next_month_utc():
    assert next_reset_date(datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)) == datetime(
        2026, 11, 1, tzinfo=timezone.utc
    )
    assert next_reset_date(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )


def test_credit_result_is_truthy_only_when_ok():
    assert CreditResult(status=CreditStatus.OK)
    assert not CreditResult(status=CreditStatus.INSUFFICIENT, cost=10)
    assert not CreditResult(status=CreditStatus.STORE_UNAVAILABLE, cost=10)


@pytest.mark.asyncio
async def test_initialize_is_idempotent(session_maker, db_session):
    first = await initialize_user_credits(USER_ID, db_session)
    second = await initialize_user_credits(USER_ID, db_session, plan_credits=5000)

    assert first.total_credits == 1000
    assert first.used_credits == 0
    assert first.reset_date is None
    assert second.total_credits == 1000

    async with session_maker() as session:
        count = await session.scalar(select(func.count()).select_from(CreditBalance))
    assert count == 1


@pytest.mark.asyncio
async def test_insufficient_debit_mutates_nothing_and_cheaper_action_succeeds(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    await _set_usage(session_maker, USER_ID, total=1000, used=995)

    check = await has_enough_credits(USER_ID, CreditActionType.TEXT_GENERATION, db_session)
    assert check.status is CreditStatus.INSUFFICIENT

    denied = await consume_credits(USER_ID, CreditActionType.TEXT_GENERATION, db_session, description="blog post")
    assert denied.status is CreditStatus.INSUFFICIENT
    assert (await _balance_row(session_maker, USER_ID)).used_credits == 995
    assert await _log_rows(session_maker, USER_ID) == []

    granted = await consume_credits(USER_ID, CreditActionType.GRAMMAR_CHECK, db_session, description="Checked grammar")
    assert granted
    assert granted.cost == 3
    assert granted.balance.used_credits == 998
    assert granted.balance.remaining == 2

    row = await _balance_row(session_maker, USER_ID)
    assert row.used_credits == 998
    entries = await _log_rows(session_maker, USER_ID)
    assert [(e.action_type, e.credits_used, e.description) for e in entries] == [
        ("grammar_check", 3, "Checked grammar")
    ]


@pytest.mark.asyncio
async def test_two_requests_that_passed_the_check_cannot_overspend(session_maker):
    async with session_maker() as session:
        await initialize_user_credits(USER_ID, session)
    await _set_usage(session_maker, USER_ID, total=1000, used=990)

    async with session_maker() as first, session_maker() as second:
        assert await has_enough_credits(USER_ID, CreditActionType.TEXT_GENERATION, first)
        assert await has_enough_credits(USER_ID, CreditActionType.TEXT_GENERATION, second)

        results = [
            await consume_credits(USER_ID, CreditActionType.TEXT_GENERATION, first),
            await consume_credits(USER_ID, CreditActionType.TEXT_GENERATION, second),
        ]

    assert [result.status for result in results] == [CreditStatus.OK, CreditStatus.INSUFFICIENT]
    row = await _balance_row(session_maker, USER_ID)
    assert row.used_credits == 1000
    assert row.used_credits <= row.total_credits


@pytest.mark.asyncio
async def test_zero_cost_actions_skip_the_store(session_maker, db_session):
    result = await consume_credits(USER_ID, CreditActionType.MANUAL_ADJUSTMENT, db_session)
    assert result.status is CreditStatus.OK
    assert result.cost == 0
    assert await _balance_row(session_maker, USER_ID) is None
    assert await _log_rows(session_maker, USER_ID) == []


@pytest.mark.asyncio
async def test_update_total_credits_moves_ceiling_and_schedules_reset(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    await consume_credits(USER_ID, CreditActionType.IMAGE_GENERATION, db_session)

    assert await update_total_credits(USER_ID, 10000, db_session)

    row = await _balance_row(session_maker, USER_ID)
    assert row.total_credits == 10000
    assert row.used_credits == 50
    reset_date = row.reset_date.replace(tzinfo=timezone.utc) if row.reset_date.tzinfo is None else row.reset_date
    assert reset_date == next_reset_date()

    entries = await _log_rows(session_maker, USER_ID)
    assert entries[-1].action_type == "plan_upgrade"
    assert entries[-1].credits_used == 0
    assert entries[-1].description == "Updated total credits to 10000"


@pytest.mark.asyncio
async def test_reset_zeroes_usage_and_logs_one_renewal(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    await _set_usage(session_maker, USER_ID, total=1000, used=700)

    assert await reset_user_credits(USER_ID, 10000, db_session)

    row = await _balance_row(session_maker, USER_ID)
    assert row.used_credits == 0
    assert row.total_credits == 10000
    renewals = [e for e in await _log_rows(session_maker, USER_ID) if e.action_type == "plan_renewal"]
    assert len(renewals) == 1
    assert renewals[0].description == "Reset credits to 10000"
    assert renewals[0].credits_used == 0


@pytest.mark.asyncio
async def test_due_reset_date_renews_balance_on_read(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    past = datetime.now(timezone.utc) - timedelta(days=1)
    await _set_usage(session_maker, USER_ID, total=10000, used=9000, reset_date=past)

    snapshot = await initialize_user_credits(USER_ID, db_session)

    assert snapshot.used_credits == 0
    assert snapshot.total_credits == 10000
    assert snapshot.reset_date == next_reset_date()


@pytest.mark.asyncio
async def test_purchased_credits_raise_total(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)

    snapshot = await add_purchased_credits(USER_ID, 500, db_session, payment_reference="pi_123")

    assert snapshot.total_credits == 1500
    entries = await _log_rows(session_maker, USER_ID)
    assert entries[-1].action_type == "manual_adjustment"
    assert entries[-1].description == "Purchased 500 credits. Payment ID: pi_123"

    with pytest.raises(ValueError):
        await add_purchased_credits(USER_ID, 0, db_session)


@pytest.mark.asyncio
async def test_payment_reference_is_only_credited_once(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    await add_purchased_credits(USER_ID, 500, db_session, payment_reference="pi_once")

    with pytest.raises(DuplicatePaymentError):
        await add_purchased_credits(USER_ID, 500, db_session, payment_reference="pi_once")

    row = await _balance_row(session_maker, USER_ID)
    assert row.total_credits == 1500
    entries = await _log_rows(session_maker, USER_ID)
    assert [e.description for e in entries].count("Purchased 500 credits. Payment ID: pi_once") == 1

    other = await add_purchased_credits(USER_ID, 500, db_session, payment_reference="pi_once", payment_provider="paddle")
    assert other.total_credits == 2000


@pytest.mark.asyncio
async def test_history_is_newest_first_and_limited(db_session):
    await initialize_user_credits(USER_ID, db_session)
    for description in ("first", "second", "third"):
        assert await log_credit_usage(USER_ID, CreditActionType.TRANSLATION, 5, db_session, description=description)

    history = await get_credit_usage_history(USER_ID, db_session, limit=2)

    assert [entry.description for entry in history] == ["third", "second"]


@pytest.mark.asyncio
async def test_remaining_credits_never_negative(session_maker, db_session):
    await initialize_user_credits(USER_ID, db_session)
    await _set_usage(session_maker, USER_ID, total=100, used=100)
    assert await get_remaining_credits(USER_ID, db_session) == 0

    await update_total_credits(USER_ID, 50, db_session)
    assert await get_remaining_credits(USER_ID, db_session) == 0


@pytest.mark.asyncio
async def test_store_failure_is_reported_not_raised(db_session, monkeypatch):
    async def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(db_session, "execute", broken_execute)

    check = await has_enough_credits(USER_ID, CreditActionType.TEXT_GENERATION, db_session)
    debit = await consume_credits(USER_ID, CreditActionType.TEXT_GENERATION, db_session)

    assert check.status is CreditStatus.STORE_UNAVAILABLE
    assert debit.status is CreditStatus.STORE_UNAVAILABLE
    assert await get_credit_usage_history(USER_ID, db_session) == []
    assert await get_remaining_credits(USER_ID, db_session) == 0
