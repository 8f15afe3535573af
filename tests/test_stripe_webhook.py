"""
Stripe webhook: signature gate, replay dedupe and per-event state changes
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
import stripe
from sqlalchemy import select, func

from clockwork.models import BillingEvent, Invoice, ScheduledTask, TaskType
from clockwork.models.account import RestrictionReason, SubscriptionStatus
from clockwork.services.stripe_webhook import webhook_handler

SIGNED = {"stripe-signature": "t=1,v1=mocked"}


def make_event(event_id, event_type, obj):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def invoice_object(account, invoice_id="in_100", **fields):
    data = {
        "id": invoice_id,
        "object": "invoice",
        "number": f"CW-{invoice_id}",
        "customer": account.stripe_customer_id,
        "subscription": account.stripe_subscription_id,
        "amount_due": 4900,
        "currency": "usd",
        "attempt_count": 1,
        "lines": {"data": [{"description": "Professional", "amount": 4900, "quantity": 1}]},
    }
    data.update(fields)
    return data


@pytest.fixture
def deliver(client, monkeypatch):
    """POST an event as Stripe would, with signature verification mocked"""
    construct = MagicMock()
    monkeypatch.setattr(stripe.Webhook, "construct_event", construct)

    async def _deliver(event):
        construct.return_value = event
        return await client.post("/api/v1/billing/webhook", content=b"{}", headers=SIGNED)
    return _deliver


@pytest_asyncio.fixture
async def subscribed(make_account):
    return await make_account(
        email="member@example.com",
        tier_id="professional",
        stripe_customer_id="cus_42",
        stripe_subscription_id="sub_42",
    )


async def _count(db, model, *where):
    result = await db.execute(select(func.count()).select_from(model).where(*where))
    return result.scalar_one()


async def test_bad_signature_rejected_without_side_effects(client, db):
    response = await client.post(
        "/api/v1/billing/webhook",
        content=b'{"id": "evt_forged", "type": "customer.subscription.deleted"}',
        headers={"stripe-signature": "t=1,v1=forged"},
    )

    assert response.status_code == 400
    assert await _count(db, BillingEvent) == 0


async def test_missing_signature_rejected(client):
    response = await client.post("/api/v1/billing/webhook", content=b"{}")
    assert response.status_code == 400


async def test_replayed_event_applies_once(deliver, db, subscribed, sent_emails):
    event = make_event("evt_fail_1", "invoice.payment_failed", invoice_object(subscribed))

    first = await deliver(event)
    second = await deliver(event)

    assert first.status_code == 200
    assert first.json()["action"] == "payment_failed"
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    assert await _count(db, BillingEvent, BillingEvent.stripe_event_id == "evt_fail_1") == 1
    assert await _count(db, ScheduledTask, ScheduledTask.task_type == TaskType.RETRY_PAYMENT.value) == 1
    assert [c.kwargs["template"] for c in sent_emails.await_args_list] == ["payment_failed"]


async def test_payment_failed(deliver, db, subscribed):
    await deliver(make_event("evt_fail_2", "invoice.payment_failed", invoice_object(subscribed)))

    await db.refresh(subscribed)
    assert subscribed.subscription_status == SubscriptionStatus.PAST_DUE.value
    assert subscribed.is_restricted
    assert subscribed.restriction_reason == RestrictionReason.PAYMENT_FAILED.value

    invoice = (await db.execute(select(Invoice))).scalar_one()
    assert invoice.status == "pending"
    assert str(invoice.amount) == "49.00"
    assert invoice.currency == "USD"
    assert invoice.items == [{"description": "Professional", "amount": 49.0, "quantity": 1}]

    task = (await db.execute(select(ScheduledTask))).scalar_one()
    assert task.task_type == TaskType.RETRY_PAYMENT.value
    assert task.payload["stripe_invoice_id"] == "in_100"


async def test_payment_succeeded_lifts_payment_restriction(deliver, db, subscribed):
    await deliver(make_event("evt_fail_3", "invoice.payment_failed", invoice_object(subscribed)))
    response = await deliver(make_event(
        "evt_paid_3", "invoice.payment_succeeded", invoice_object(subscribed, amount_paid=4900)
    ))

    assert response.json()["action"] == "payment_succeeded"
    await db.refresh(subscribed)
    assert subscribed.subscription_status == SubscriptionStatus.ACTIVE.value
    assert subscribed.is_restricted is False

    invoice = (await db.execute(select(Invoice))).scalar_one()
    assert invoice.status == "paid"
    assert invoice.paid_date is not None


async def test_payment_succeeded_keeps_capacity_restriction(deliver, db, subscribed, add_dependents):
    subscribed.tier_id = "starter"
    await db.commit()
    await add_dependents(subscribed, 10)
    subscribed.is_restricted = True
    subscribed.restriction_reason = RestrictionReason.PAYMENT_FAILED.value
    subscribed.subscription_status = SubscriptionStatus.PAST_DUE.value
    await db.commit()

    await deliver(make_event("evt_paid_4", "invoice.payment_succeeded", invoice_object(subscribed)))

    await db.refresh(subscribed)
    assert subscribed.is_restricted
    assert subscribed.restriction_reason == RestrictionReason.CAPACITY_EXCEEDED.value


async def test_subscription_deleted_restricts_but_keeps_data(deliver, client, db, subscribed, add_dependents, sent_emails):
    from clockwork.utils.security import create_access_token

    await add_dependents(subscribed, 3)
    response = await deliver(make_event("evt_del_1", "customer.subscription.deleted", {
        "id": "sub_42",
        "object": "subscription",
        "customer": "cus_42",
        "status": "canceled",
        "ended_at": 1790000000,
    }))

    assert response.json()["action"] == "subscription_canceled"
    await db.refresh(subscribed)
    assert subscribed.subscription_status == SubscriptionStatus.CANCELED.value
    assert subscribed.restriction_reason == RestrictionReason.SUBSCRIPTION_CANCELED.value
    assert [c.kwargs["template"] for c in sent_emails.await_args_list] == ["subscription_canceled"]

    headers = {"Authorization": f"Bearer {create_access_token(str(subscribed.id))}"}
    listing = await client.get("/api/v1/clients", headers=headers)
    assert listing.status_code == 200
    assert len(listing.json()) == 3
    blocked = await client.post("/api/v1/clients", json={"name": "New"}, headers=headers)
    assert blocked.status_code == 403
    assert blocked.json()["reason"] == "subscription_canceled"


async def test_subscription_updated_downgrade_restricts(deliver, db, subscribed, add_dependents):
    await add_dependents(subscribed, 12)

    response = await deliver(make_event("evt_upd_1", "customer.subscription.updated", {
        "id": "sub_42",
        "object": "subscription",
        "customer": "cus_42",
        "status": "active",
        "metadata": {"account_id": str(subscribed.id), "tier_id": "starter"},
    }))

    body = response.json()
    assert body["old_tier"] == "professional"
    assert body["new_tier"] == "starter"
    assert body["restricted"] is True


async def test_subscription_updated_resolves_tier_from_price(deliver, db, subscribed):
    await deliver(make_event("evt_upd_2", "customer.subscription.updated", {
        "id": "sub_42",
        "object": "subscription",
        "customer": "cus_42",
        "status": "active",
        "cancel_at_period_end": True,
        "items": {"data": [{"price": {"id": "price_scale"}, "current_period_end": 1792000000}]},
    }))

    await db.refresh(subscribed)
    assert subscribed.tier_id == "scale"
    assert subscribed.subscription_status == SubscriptionStatus.CANCELING.value
    assert subscribed.cancellation_date is not None


async def test_subscription_created_clears_restriction(deliver, db, make_account):
    account = await make_account(
        email="returning@example.com",
        stripe_customer_id="cus_77",
        is_restricted=True,
        restriction_reason=RestrictionReason.SUBSCRIPTION_CANCELED.value,
    )

    await deliver(make_event("evt_new_1", "customer.subscription.created", {
        "id": "sub_77",
        "object": "subscription",
        "customer": "cus_77",
        "status": "trialing",
        "trial_end": 1790000000,
        "metadata": {"tier_id": "professional"},
    }))

    await db.refresh(account)
    assert account.stripe_subscription_id == "sub_77"
    assert account.tier_id == "professional"
    assert account.is_restricted is False


async def test_unknown_event_type_is_logged_and_ignored(deliver, db):
    response = await deliver(make_event("evt_misc", "charge.refunded", {"id": "ch_1", "object": "charge"}))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert await _count(db, BillingEvent, BillingEvent.stripe_event_id == "evt_misc") == 1


async def test_event_for_unknown_account(deliver):
    response = await deliver(make_event("evt_orphan", "invoice.payment_failed", {
        "id": "in_orphan", "object": "invoice", "customer": "cus_nobody",
    }))

    assert response.status_code == 200
    assert response.json()["status"] == "warning"


async def test_handler_failure_rolls_back_audit_row(db, subscribed, monkeypatch):
    event = make_event("evt_boom", "customer.subscription.updated", {
        "id": "sub_42", "object": "subscription", "customer": "cus_42", "status": "active",
    })
    original = webhook_handler.handle_subscription_updated
    monkeypatch.setattr(webhook_handler, "handle_subscription_updated", AsyncMock(side_effect=RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        await webhook_handler.process_event(db, event)
    assert await _count(db, BillingEvent) == 0

    # Redelivery after the fault is processed normally
    monkeypatch.setattr(webhook_handler, "handle_subscription_updated", original)
    result = await webhook_handler.process_event(db, event)
    assert result["action"] == "subscription_updated"
    assert await _count(db, BillingEvent) == 1
