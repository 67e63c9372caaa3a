import time

import pytest
from jose import jwt
from sqlalchemy import update

from config import settings
from models.user import User
from services.accounts import _insert_user, ensure_user, placeholder_email
from services.credits import initialize_user_credits
from services.session_token import create_session_token, decode_session_token


ADMIN_USER_ID = "admin-user-0001"
MEMBER_USER_ID = "member-user-0001"
ADMIN_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(ADMIN_USER_ID, 'admin@example.com')['token']}"}
MEMBER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(MEMBER_USER_ID, 'member@example.com')['token']}"}


async def _seed(session_maker):
    async with session_maker() as session:
        await ensure_user(session, ADMIN_USER_ID, "admin@example.com")
        await ensure_user(session, MEMBER_USER_ID, "member@example.com")
        await initialize_user_credits(MEMBER_USER_ID, session)
        await session.execute(update(User).where(User.id == ADMIN_USER_ID).values(is_admin=True))
        await session.commit()


@pytest.mark.asyncio
async def test_non_admin_is_forbidden(integration_client):
    client, session_maker = integration_client
    await _seed(session_maker)

    resp = await client.post(
        f"/admin/credits/{MEMBER_USER_ID}/adjust",
        json={"totalCredits": 99999},
        headers=MEMBER_AUTH_HEADER,
    )

    assert resp.status_code == 403
    balance = await client.get("/billing/credits", headers=MEMBER_AUTH_HEADER)
    assert balance.json()["totalCredits"] == 1000


@pytest.mark.asyncio
async def test_admin_adjusts_and_resets_credits(integration_client):
    client, session_maker = integration_client
    await _seed(session_maker)

    adjusted = await client.post(
        f"/admin/credits/{MEMBER_USER_ID}/adjust",
        json={"totalCredits": 5000},
        headers=ADMIN_AUTH_HEADER,
    )
    assert adjusted.status_code == 200
    assert adjusted.json()["totalCredits"] == 5000
    assert adjusted.json()["resetDate"] is not None

    reset = await client.post(
        f"/admin/credits/{MEMBER_USER_ID}/reset",
        json={"totalCredits": 2000},
        headers=ADMIN_AUTH_HEADER,
    )
    assert reset.status_code == 200
    assert reset.json()["totalCredits"] == 2000
    assert reset.json()["usedCredits"] == 0

    detail = await client.get(f"/admin/credits/{MEMBER_USER_ID}", headers=ADMIN_AUTH_HEADER)
    assert detail.status_code == 200
    body = detail.json()
    assert body["subscription"]["plan"] == "Free"
    assert [item["actionType"] for item in body["history"]] == ["plan_renewal", "manual_adjustment"]
    assert body["history"][1]["description"] == f"Admin {ADMIN_USER_ID} set total credits to 5000"


@pytest.mark.asyncio
async def test_admin_target_must_exist(integration_client):
    client, session_maker = integration_client
    await _seed(session_maker)
    resp = await client.get("/admin/credits/nobody", headers=ADMIN_AUTH_HEADER)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_me_reports_plan_and_remaining_credits(integration_client):
    client, _ = integration_client

    resp = await client.get("/auth/me", headers=MEMBER_AUTH_HEADER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["user_id"] == MEMBER_USER_ID
    assert body["email"] == "member@example.com"
    assert body["is_admin"] is False
    assert body["plan"] == "Free"
    assert body["remaining_credits"] == 1000


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(integration_client):
    client, _ = integration_client
    resp = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_token_for_another_audience_is_rejected(integration_client):
    client, _ = integration_client
    claims = {"sub": MEMBER_USER_ID, "type": "studio_session", "exp": int(time.time()) + 3600}
    no_audience = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    other_audience = jwt.encode({**claims, "aud": "another-api"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    for token in (no_audience, other_audience):
        resp = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


def test_session_token_round_trips_claims():
    issued = create_session_token(MEMBER_USER_ID, "member@example.com")
    claims = decode_session_token(issued["token"])
    assert claims.user_id == MEMBER_USER_ID
    assert claims.email == "member@example.com"
    assert claims.expires_at == issued["expires_at"]


@pytest.mark.asyncio
async def test_ensure_user_falls_back_to_placeholder_when_email_is_taken(session_maker):
    async with session_maker() as session:
        await ensure_user(session, ADMIN_USER_ID, "shared@example.com")
        user = await ensure_user(session, MEMBER_USER_ID, "shared@example.com")

    assert user.id == MEMBER_USER_ID
    assert user.email == placeholder_email(MEMBER_USER_ID)


@pytest.mark.asyncio
async def test_concurrent_first_sight_converges_on_one_row(session_maker):
    async with session_maker() as first, session_maker() as second:
        created = await ensure_user(first, MEMBER_USER_ID, "member@example.com")
        raced = await _insert_user(second, MEMBER_USER_ID, "member@example.com")

    assert raced is not None
    assert raced.id == created.id
    assert raced.email == "member@example.com"
