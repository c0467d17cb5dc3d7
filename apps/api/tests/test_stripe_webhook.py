import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from config import settings
from database import get_db
from main import app
from models.credit_ledger import CreditLedgerEntry, CreditsSource
from models.stripe_event import StripeEvent
from services import billing_webhook
from services.credits import StoreUnavailableError, add_credits, get_balance
from services.subscription import get_subscription


WEBHOOK_SECRET = "whsec_test_secret_1234567890abcdef"
USER_ID = "stripe-user"
PERIOD_START = 1_790_000_000
PERIOD_END = PERIOD_START + 30 * 24 * 3600


def _signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed_payload = f"{timestamp}.{payload.decode()}"
    mac = hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


def _subscription_event(event_id, event_type="customer.subscription.created", status="active", **overrides):
    subscription = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": status,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "trial_end": None,
        "metadata": {"user_id": USER_ID},
        "items": {"data": [{"price": {"id": "price_pro", "product": "prod_pro"}}]},
    }
    subscription.update(overrides)
    return {"id": event_id, "type": event_type, "data": {"object": subscription}}


@pytest_asyncio.fixture
async def webhook_client(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:

        async def deliver(event, signature=None):
            payload = json.dumps(event).encode()
            return await client.post(
                "/billing/webhook",
                content=payload,
                headers={
                    "stripe-signature": signature or _signature(payload),
                    "content-type": "application/json",
                },
            )

        yield deliver, session_maker

    app.dependency_overrides.pop(get_db, None)


@pytest.mark.asyncio
async def test_subscription_created_stores_status_and_grants_plan_credits(webhook_client):
    deliver, session_maker = webhook_client

    response = await deliver(_subscription_event("evt_sub_created"))
    assert response.status_code == 200
    assert response.json()["status"] == "processed"

    async with session_maker() as session:
        subscription = await get_subscription(USER_ID, session)
        assert subscription.status == "active"
        assert subscription.stripe_customer_id == "cus_123"
        assert await get_balance(USER_ID, session) == settings.SUBSCRIPTION_PRODUCT_CREDITS["prod_pro"]

        entries = (await session.execute(select(CreditLedgerEntry))).scalars().all()
        assert len(entries) == 1
        assert entries[0].source is CreditsSource.SUBSCRIPTION
        assert entries[0].ref_id == f"sub_123:{PERIOD_START}"

        event = (await session.execute(select(StripeEvent))).scalar_one()
        assert event.processed_ok is True


@pytest.mark.asyncio
async def test_redelivery_and_same_period_updates_grant_once(webhook_client):
    deliver, session_maker = webhook_client

    await deliver(_subscription_event("evt_1"))
    duplicate = await deliver(_subscription_event("evt_1"))
    update = await deliver(_subscription_event("evt_2", event_type="customer.subscription.updated"))

    assert duplicate.json()["status"] == "already_processed"
    assert update.json()["status"] == "processed"
    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == 1000


@pytest.mark.asyncio
async def test_new_period_grants_again(webhook_client):
    deliver, session_maker = webhook_client

    await deliver(_subscription_event("evt_p1"))
    await deliver(
        _subscription_event(
            "evt_p2",
            event_type="customer.subscription.updated",
            current_period_start=PERIOD_END,
            current_period_end=PERIOD_END + 30 * 24 * 3600,
        )
    )

    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == 2000


@pytest.mark.asyncio
async def test_unknown_product_uses_default_grant_and_past_due_grants_nothing(webhook_client):
    deliver, session_maker = webhook_client

    await deliver(
        _subscription_event(
            "evt_default",
            items={"data": [{"price": {"id": "price_x", "product": "prod_unknown"}}]},
        )
    )
    await deliver(
        _subscription_event(
            "evt_past_due",
            event_type="customer.subscription.updated",
            status="past_due",
            current_period_start=PERIOD_END,
        )
    )

    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == settings.DEFAULT_SUBSCRIPTION_CREDITS
        assert (await get_subscription(USER_ID, session)).status == "past_due"


@pytest.mark.asyncio
async def test_subscription_deleted_marks_canceled(webhook_client):
    deliver, session_maker = webhook_client

    await deliver(_subscription_event("evt_create"))
    response = await deliver(_subscription_event("evt_delete", event_type="customer.subscription.deleted"))

    assert response.status_code == 200
    async with session_maker() as session:
        subscription = await get_subscription(USER_ID, session)
        assert subscription.status == "canceled"
        assert subscription.cancelled_at is not None


@pytest.mark.asyncio
async def test_checkout_payment_grants_purchased_credits_once(webhook_client):
    deliver, session_maker = webhook_client
    event = {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "mode": "payment",
                "subscription": None,
                "client_reference_id": USER_ID,
                "metadata": {"credits_amount": "25"},
            }
        },
    }

    await deliver(event)
    await deliver(dict(event, id="evt_checkout_retry"))

    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == 25
        entry = (await session.execute(select(CreditLedgerEntry))).scalar_one()
        assert entry.source is CreditsSource.COUPON
        assert entry.idempotency_key == "checkout_cs_test_1"


@pytest.mark.asyncio
async def test_missing_user_metadata_is_recorded_as_failure(webhook_client):
    deliver, session_maker = webhook_client

    response = await deliver(_subscription_event("evt_no_user", metadata={}))

    assert response.status_code == 200
    assert response.json()["status"] == "failed"
    async with session_maker() as session:
        event = (await session.execute(select(StripeEvent))).scalar_one()
        assert event.processed_ok is False
        assert event.error == "No user_id in subscription metadata"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(webhook_client):
    deliver, session_maker = webhook_client

    response = await deliver({"id": "evt_other", "type": "customer.created", "data": {"object": {}}})

    assert response.json()["status"] == "ignored"
    async with session_maker() as session:
        event = (await session.execute(select(StripeEvent))).scalar_one()
        assert event.processed_ok is True


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(webhook_client):
    deliver, session_maker = webhook_client

    response = await deliver(_subscription_event("evt_forged"), signature=f"t={int(time.time())},v1=deadbeef")

    assert response.status_code == 400
    async with session_maker() as session:
        assert (await session.execute(select(StripeEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_webhook_without_secret_is_unavailable(webhook_client, monkeypatch):
    deliver, _ = webhook_client
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    response = await deliver(_subscription_event("evt_unconfigured"))
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_and_success_recorded(webhook_client, monkeypatch):
    deliver, session_maker = webhook_client
    calls = []

    async def _flaky_add_credits(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StoreUnavailableError("Credits store unavailable during ledger append")
        return await add_credits(*args, **kwargs)

    monkeypatch.setattr(billing_webhook, "add_credits", _flaky_add_credits)

    first = await deliver(_subscription_event("evt_retry"))
    second = await deliver(_subscription_event("evt_retry"))
    third = await deliver(_subscription_event("evt_retry"))

    assert first.status_code == 500
    assert second.json()["status"] == "processed"
    assert third.json()["status"] == "already_processed"
    assert len(calls) == 2
    async with session_maker() as session:
        event = (await session.execute(select(StripeEvent))).scalar_one()
        assert event.processed_ok is True
        assert event.error is None
        assert await get_balance(USER_ID, session) == 1000


@pytest.mark.asyncio
async def test_periods_without_start_time_are_granted_per_event(webhook_client):
    deliver, session_maker = webhook_client

    await deliver(_subscription_event("evt_nostart_1", current_period_start=None))
    await deliver(
        _subscription_event("evt_nostart_2", event_type="customer.subscription.updated", current_period_start=None)
    )

    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == 2000
        ref_ids = (await session.execute(select(CreditLedgerEntry.ref_id))).scalars().all()
        assert sorted(ref_ids) == ["sub_123:evt_nostart_1", "sub_123:evt_nostart_2"]


@pytest.mark.asyncio
async def test_checkout_credits_summed_from_line_items(webhook_client):
    deliver, session_maker = webhook_client
    event = {
        "id": "evt_checkout_items",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_items",
                "mode": "payment",
                "client_reference_id": USER_ID,
                "metadata": {},
                "line_items": {
                    "data": [
                        {"quantity": 2, "price": {"metadata": {"credits_amount": "10"}}},
                        {"quantity": 1, "price": {"metadata": {"credits_amount": "5"}}},
                        {"quantity": 3, "price": {"metadata": {}}},
                    ]
                },
            }
        },
    }

    response = await deliver(event)

    assert response.json()["status"] == "processed"
    async with session_maker() as session:
        assert await get_balance(USER_ID, session) == 25
