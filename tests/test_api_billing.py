"""
Billing routes: tiers, status, subscription changes, invoices and recommendations
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import stripe

from clockwork.models import Invoice
from clockwork.models.account import RestrictionReason
from clockwork.utils.database import utcnow


async def test_tiers_are_public(client):
    response = await client.get("/api/v1/billing/tiers", params={"category": "specialist"})

    assert response.status_code == 200
    tiers = response.json()["tiers"]
    assert [t["id"] for t in tiers] == ["starter", "professional", "scale"]
    assert tiers[0]["client_limit"] == 10


async def test_status(client, auth_headers, account, add_dependents):
    await add_dependents(account, 4)

    response = await client.get("/api/v1/billing/status", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["tier"]["id"] == "starter"
    assert body["usage"]["active_clients"] == 4
    assert body["usage"]["percentage"] == 40
    assert body["subscription"]["is_restricted"] is False
    assert float(body["revenue"]["total"]) == 0


async def test_subscribe(client, auth_headers, monkeypatch):
    monkeypatch.setattr(stripe.Customer, "create", MagicMock(return_value={"id": "cus_api"}))
    monkeypatch.setattr(stripe.Customer, "modify", MagicMock())
    monkeypatch.setattr(stripe.PaymentMethod, "attach", MagicMock())
    monkeypatch.setattr(stripe.Subscription, "create", MagicMock(return_value={
        "id": "sub_api", "status": "trialing", "trial_end": 1790000000, "latest_invoice": None,
    }))

    response = await client.post(
        "/api/v1/billing/subscribe",
        json={"tier_id": "scale", "payment_method_id": "pm_card"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json()["subscription"]["tier"] == "scale"
    status = await client.get("/api/v1/billing/status", headers=auth_headers)
    assert status.headers["X-Client-Limit"] == "150"


async def test_upgrade_errors(client, auth_headers, db, account, monkeypatch):
    no_subscription = await client.post("/api/v1/billing/upgrade", json={"tier_id": "scale"}, headers=auth_headers)
    assert no_subscription.status_code == 400
    assert no_subscription.json()["error"] == "Billing error"

    account.stripe_subscription_id = "sub_1"
    await db.commit()
    monkeypatch.setattr(
        stripe.Subscription, "retrieve", MagicMock(side_effect=stripe.APIConnectionError("timeout"))
    )
    unreachable = await client.post("/api/v1/billing/upgrade", json={"tier_id": "scale"}, headers=auth_headers)
    assert unreachable.status_code == 502


async def test_cancel(client, auth_headers, db, account, monkeypatch):
    account.stripe_subscription_id = "sub_1"
    await db.commit()
    monkeypatch.setattr(stripe.Subscription, "modify", MagicMock(return_value={
        "id": "sub_1", "current_period_end": 1792000000,
    }))

    response = await client.post("/api/v1/billing/cancel", json={"reason": "moving"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["cancel_date"].startswith("2026-")
    await db.refresh(account)
    assert account.subscription_status == "canceling"


async def test_invoices(client, auth_headers, db, account):
    for i, status in enumerate(["paid", "paid", "pending"]):
        db.add(Invoice(
            invoice_number=f"CW-{i}",
            account_id=account.id,
            amount=Decimal("29.00"),
            status=status,
            due_date=utcnow().date(),
        ))
    await db.commit()

    everything = await client.get("/api/v1/billing/invoices", headers=auth_headers)
    assert everything.json()["total"] == 3

    paid = await client.get("/api/v1/billing/invoices", params={"status": "paid", "limit": 1}, headers=auth_headers)
    body = paid.json()
    assert body["total"] == 2
    assert len(body["invoices"]) == 1
    assert body["invoices"][0]["status"] == "paid"

    status = await client.get("/api/v1/billing/status", headers=auth_headers)
    assert float(status.json()["revenue"]["total"]) == 58.0


async def test_archive_clients_lifts_restriction(client, auth_headers, db, account, add_dependents):
    dependents = await add_dependents(account, 10)
    account.is_restricted = True
    account.restriction_reason = RestrictionReason.CAPACITY_EXCEEDED.value
    await db.commit()

    response = await client.post(
        "/api/v1/billing/archive-clients",
        json={"client_ids": [str(dependents[0].id), str(dependents[1].id)]},
        headers=auth_headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert len(body["archived"]) == 2
    assert body["is_restricted"] is False


async def test_recommendations(client, auth_headers, account, add_dependents):
    await add_dependents(account, 9)

    response = await client.get("/api/v1/billing/recommendations", headers=auth_headers)

    reasons = [r["reason"] for r in response.json()["recommendations"]]
    assert reasons == ["approaching_limit", "rapid_growth"]
    assert response.json()["recommendations"][0]["suggested_tier"]["id"] == "professional"


async def test_no_recommendations_for_quiet_account(client, auth_headers, account, add_dependents):
    await add_dependents(account, 2, created_at=utcnow() - timedelta(days=90))

    response = await client.get("/api/v1/billing/recommendations", headers=auth_headers)

    assert response.json()["recommendations"] == []
