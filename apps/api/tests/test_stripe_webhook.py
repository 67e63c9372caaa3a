import hashlib
import hmac
import json
import time

import pytest
import stripe
from sqlalchemy import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_log import CreditLogEntry
from models.subscription import Subscription
from services.accounts import ensure_user
from services.credits import initialize_user_credits
from services.payments.stripe_adapter import StripeAdapter, map_status, plan_for_price
from services.subscriptions import PaymentProvider, begin_checkout


STRIPE_USER_ID = "stripe-user-0001"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def stripe_settings(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_PRO", "price_pro")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID_BUSINESS", "price_business")


def _signed(event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {"stripe-signature": f"t={timestamp},v1={digest}", "content-type": "application/json"}


def _subscription(status="active", price="price_pro", customer="cus_0001", sub_id="sub_0001", metadata=None):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "items": {
            "data": [
                {
                    "price": {"id": price},
                    "current_period_start": 1791072000,
                    "current_period_end": 1793750400,
                }
            ]
        },
    }


def _event(event_type, data_object):
    return {"id": f"evt_{event_type}", "type": event_type, "data": {"object": data_object}}


async def _seed_pending_checkout(session_maker):
    async with session_maker() as session:
        await ensure_user(session, STRIPE_USER_ID, "stripe@example.com")
        await initialize_user_credits(STRIPE_USER_ID, session)
        await begin_checkout(STRIPE_USER_ID, PaymentProvider.STRIPE, "Pro", session, stripe_customer_id="cus_0001")


async def _state(session_maker):
    async with session_maker() as session:
        row = (
            await session.execute(select(Subscription).where(Subscription.user_id == STRIPE_USER_ID))
        ).scalar_one_or_none()
        balance = (
            await session.execute(select(CreditBalance).where(CreditBalance.user_id == STRIPE_USER_ID))
        ).scalar_one_or_none()
        entries = (
            await session.execute(select(CreditLogEntry).where(CreditLogEntry.user_id == STRIPE_USER_ID))
        ).scalars().all()
    return row, balance, list(entries)


def test_status_and_price_mapping():
    assert map_status("active") == "active"
    assert map_status("trialing") == "active"
    assert map_status("canceled") == "cancelled"
    assert map_status("incomplete_expired") == "failed"
    assert map_status("unpaid") == "failed"
    assert map_status("incomplete") == "pending"
    assert plan_for_price("price_pro") == "Pro"
    assert plan_for_price("price_business") == "Business"
    assert plan_for_price("price_unknown") == "Free"


@pytest.mark.asyncio
async def test_pending_checkout_does_not_change_credits(integration_client):
    _, session_maker = integration_client
    await _seed_pending_checkout(session_maker)

    row, balance, entries = await _state(session_maker)
    assert row.status == "pending"
    assert row.plan == "Pro"
    assert balance.total_credits == 1000
    assert entries == []


@pytest.mark.asyncio
async def test_subscription_updated_activates_plan_and_replay_is_idempotent(integration_client):
    client, session_maker = integration_client
    await _seed_pending_checkout(session_maker)
    payload, headers = _signed(_event("customer.subscription.updated", _subscription()))

    first = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert first.status_code == 200
    assert first.json() == {"received": True}

    row, balance, entries = await _state(session_maker)
    assert row.plan == "Pro"
    assert row.status == "active"
    assert row.payment_provider == "stripe"
    assert row.stripe_subscription_id == "sub_0001"
    assert row.current_period_start is not None
    assert row.current_period_end is not None
    assert balance.total_credits == 10000
    assert len(entries) == 1

    replay = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert replay.status_code == 200

    replay_row, replay_balance, replay_entries = await _state(session_maker)
    assert (replay_row.plan, replay_row.status, replay_row.stripe_subscription_id) == ("Pro", "active", "sub_0001")
    assert replay_balance.total_credits == 10000
    assert len(replay_entries) == 1


@pytest.mark.asyncio
async def test_subscription_deleted_returns_user_to_free(integration_client):
    client, session_maker = integration_client
    await _seed_pending_checkout(session_maker)
    payload, headers = _signed(_event("customer.subscription.updated", _subscription(price="price_business")))
    assert (await client.post("/webhooks/stripe", content=payload, headers=headers)).status_code == 200

    payload, headers = _signed(_event("customer.subscription.deleted", _subscription(status="canceled")))
    resp = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert resp.status_code == 200

    row, balance, _ = await _state(session_maker)
    assert row.plan == "Free"
    assert row.status == "inactive"
    assert row.stripe_subscription_id is None
    assert row.current_period_end is None
    assert row.stripe_customer_id == "cus_0001"
    assert balance.total_credits == 1000


@pytest.mark.asyncio
async def test_checkout_completed_binds_customer_to_user(integration_client, monkeypatch):
    client, session_maker = integration_client

    async def fake_retrieve(self, subscription_id):
        assert subscription_id == "sub_new"
        return _subscription(customer="cus_new", sub_id="sub_new")

    monkeypatch.setattr(StripeAdapter, "retrieve_subscription", fake_retrieve)
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_new",
        "subscription": "sub_new",
        "client_reference_id": STRIPE_USER_ID,
    }
    payload, headers = _signed(_event("checkout.session.completed", session))

    resp = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert resp.status_code == 200

    row, balance, _ = await _state(session_maker)
    assert row.stripe_customer_id == "cus_new"
    assert row.plan == "Pro"
    assert row.status == "active"
    assert balance.total_credits == 10000


@pytest.mark.asyncio
async def test_payment_mode_checkout_is_ignored(integration_client):
    client, session_maker = integration_client
    session = {"id": "cs_pay", "object": "checkout.session", "mode": "payment", "client_reference_id": STRIPE_USER_ID}
    payload, headers = _signed(_event("checkout.session.completed", session))

    resp = await client.post("/webhooks/stripe", content=payload, headers=headers)
    assert resp.status_code == 200
    row, _, _ = await _state(session_maker)
    assert row is None


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_without_mutation(integration_client):
    client, session_maker = integration_client
    await _seed_pending_checkout(session_maker)
    payload, headers = _signed(_event("customer.subscription.updated", _subscription()), secret="whsec_wrong")

    resp = await client.post("/webhooks/stripe", content=payload, headers=headers)

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid signature"}
    row, balance, _ = await _state(session_maker)
    assert row.status == "pending"
    assert balance.total_credits == 1000


@pytest.mark.asyncio
async def test_missing_signature_header_is_rejected(integration_client):
    client, _ = integration_client
    payload = json.dumps(_event("customer.subscription.updated", _subscription()))
    resp = await client.post("/webhooks/stripe", content=payload)
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_a_server_error(integration_client, monkeypatch):
    client, _ = integration_client
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    payload, headers = _signed(_event("customer.subscription.updated", _subscription()))

    resp = await client.post("/webhooks/stripe", content=payload, headers=headers)

    assert resp.status_code == 500
    assert resp.json()["error"]


@pytest.mark.asyncio
async def test_retrieve_subscription_returns_plain_dict(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    seen = {}

    def fake_retrieve(subscription_id, **kwargs):
        seen["id"] = subscription_id
        seen["api_key"] = kwargs.get("api_key")
        return stripe.Subscription.construct_from(_subscription(sub_id=subscription_id), "sk_test_123")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)

    result = await StripeAdapter().retrieve_subscription("sub_0042")

    assert isinstance(result, dict)
    assert result["id"] == "sub_0042"
    assert result["items"]["data"][0]["price"]["id"] == "price_pro"
    assert seen == {"id": "sub_0042", "api_key": "sk_test_123"}
