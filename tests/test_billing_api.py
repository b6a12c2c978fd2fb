import json
from datetime import timedelta
from types import SimpleNamespace

import stripe
from sqlalchemy import func, select

from app.core.security import create_access_token
from app.models.crypto_payment import CryptoPayment
from app.models.subscription import Subscription
from app.models.user import User
from app.utils.dates import utcnow
from conftest import encode, ipn_payload, ipn_signature, stripe_signature, stripe_subscription_event

INVOICE_REQUEST = {
    "plan": "pro",
    "billing_period": "monthly",
    "currency": "bitcoin",
    "return_url": "https://app.test/billing?success=true",
    "cancel_url": "https://app.test/billing?canceled=true",
}


async def _add_subscription(session_factory, **overrides):
    fields = dict(
        id="sub_live",
        user_id="user_1",
        status="active",
        plan="pro",
        payment_method="stripe",
        current_period_start=utcnow() - timedelta(days=5),
        current_period_end=utcnow() + timedelta(days=25),
    )
    fields.update(overrides)
    async with session_factory() as session:
        session.add(Subscription(**fields))
        await session.commit()


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_requires_authentication(client):
    response = await client.get("/api/billing/subscription")

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert response.json()["error"]["code"] == "unauthorized"


async def test_expired_token_rejected(client, user):
    token = create_access_token({"sub": user.id, "email": user.email}, expires_delta=timedelta(minutes=-1))

    response = await client.get("/api/billing/entitlements", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Token has expired"


async def test_token_without_email_cannot_provision(client):
    token = create_access_token({"sub": "user_anon"})

    response = await client.get("/api/billing/entitlements", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


async def test_first_access_provisions_user(client, session_factory):
    token = create_access_token({"sub": "user_new", "email": "new@example.com"})

    response = await client.get("/api/billing/entitlements", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    async with session_factory() as session:
        assert (await session.get(User, "user_new")).plan == "free"


async def test_subscription_is_null_without_rows(client, auth_headers):
    response = await client.get("/api/billing/subscription", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() is None


async def test_free_entitlements(client, auth_headers):
    response = await client.get("/api/billing/entitlements", headers=auth_headers)

    body = response.json()
    assert body["plan"] == "free"
    assert body["expires_at"] is None
    assert body["limits"] == {"accounts": 1, "history_days": 7, "competitors": 0, "mention_alerts": 5}


async def test_subscription_with_latest_period_wins(client, auth_headers, session_factory):
    await _add_subscription(session_factory, id="sub_old", current_period_end=utcnow() + timedelta(days=2))
    await _add_subscription(session_factory, id="sub_new", plan="agency")

    response = await client.get("/api/billing/subscription", headers=auth_headers)

    assert response.json()["id"] == "sub_new"
    assert response.json()["plan"] == "agency"


async def test_plans_listing(client):
    response = await client.get("/api/billing/plans")

    plans = response.json()["plans"]
    assert set(plans) == {"pro", "agency"}
    assert plans["pro"]["usd_monthly"] == 29.0
    assert plans["agency"]["usd_annual"] == 950.4
    assert plans["pro"]["crypto_monthly"] is None


async def test_plans_with_crypto_estimate(client):
    response = await client.get("/api/billing/plans", params={"currency": "BTC"})

    assert response.json()["plans"]["pro"]["crypto_monthly"]["amount"] == 0.00042


async def test_plans_rejects_unknown_currency(client):
    response = await client.get("/api/billing/plans", params={"currency": "DOGE"})

    assert response.status_code == 422


# ── Crypto invoices ──────────────────────────────────────────────────────────
async def test_create_crypto_invoice(client, auth_headers, session_factory):
    response = await client.post("/api/billing/crypto/invoice", json=INVOICE_REQUEST, headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["invoice_id"] == "4522625843"
    assert body["pay_currency"] == "BTC"
    assert body["price_usd"] == 29.0
    async with session_factory() as session:
        payment = await session.get(CryptoPayment, "4522625843")
    assert payment.status == "pending"


async def test_crypto_invoice_conflicts_with_active_access(client, auth_headers, session_factory, nowpayments):
    await _add_subscription(session_factory)

    response = await client.post("/api/billing/crypto/invoice", json=INVOICE_REQUEST, headers=auth_headers)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "subscription_conflict"
    assert error["details"]["plan"] == "pro"
    assert "current_period_end" in error["details"]
    assert nowpayments.requests == []


async def test_expired_access_does_not_conflict(client, auth_headers, session_factory):
    await _add_subscription(
        session_factory,
        payment_method="crypto",
        current_period_start=utcnow() - timedelta(days=31),
        current_period_end=utcnow() - timedelta(days=1),
    )

    response = await client.post("/api/billing/crypto/invoice", json=INVOICE_REQUEST, headers=auth_headers)

    assert response.status_code == 200


async def test_invalid_invoice_request(client, auth_headers):
    response = await client.post(
        "/api/billing/crypto/invoice",
        json={**INVOICE_REQUEST, "plan": "free"},
        headers=auth_headers,
    )

    assert response.status_code == 422


async def test_provider_failure_is_502(client, auth_headers, nowpayments, session_factory):
    nowpayments.invoice_status = 400
    nowpayments.invoice_body = {"message": "Currency not available"}

    response = await client.post("/api/billing/crypto/invoice", json=INVOICE_REQUEST, headers=auth_headers)

    assert response.status_code == 502
    assert response.json()["error"]["details"]["provider"] == "nowpayments"
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(CryptoPayment)) == 0


async def test_invoice_status_is_owner_only(client, auth_headers, session_factory):
    async with session_factory() as session:
        session.add(User(id="user_2", email="other@example.com", plan="free"))
        session.add(CryptoPayment(
            id="inv_other", user_id="user_2", nowpayments_invoice_id="inv_other",
            order_id="user_2_pro_monthly_1", plan="pro", billing_period="monthly",
            currency="BTC", price_usd=2900,
        ))
        await session.commit()

    response = await client.get("/api/billing/crypto/invoice/inv_other", headers=auth_headers)

    assert response.status_code == 404


async def test_history_newest_first(client, auth_headers, session_factory):
    now = utcnow()
    async with session_factory() as session:
        for i, age in enumerate((3, 1, 2)):
            session.add(CryptoPayment(
                id=f"inv_{i}", user_id="user_1", nowpayments_invoice_id=f"inv_{i}",
                order_id=f"user_1_pro_monthly_{i}", plan="pro", billing_period="monthly",
                currency="BTC", price_usd=2900, created_at=now - timedelta(days=age),
            ))
        await session.commit()

    response = await client.get("/api/billing/history", headers=auth_headers)

    body = response.json()
    assert body["total"] == 3
    assert [p["id"] for p in body["payments"]] == ["inv_1", "inv_2", "inv_0"]


# ── Card rail ────────────────────────────────────────────────────────────────
async def test_card_checkout(client, auth_headers, monkeypatch):
    monkeypatch.setattr(stripe.Customer, "create", lambda **kw: SimpleNamespace(id="cus_new"))
    monkeypatch.setattr(
        stripe.checkout.Session,
        "create",
        lambda **kw: SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1"),
    )

    response = await client.post(
        "/api/billing/checkout",
        json={"plan": "agency", "billing_period": "annual", "return_url": "https://app.test/billing"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json() == {"checkout_url": "https://checkout.stripe.test/cs_1", "session_id": "cs_1"}


async def test_portal_requires_customer(client, auth_headers):
    response = await client.post(
        "/api/billing/portal", json={"return_url": "https://app.test/billing"}, headers=auth_headers
    )

    assert response.status_code == 404


async def test_cancel_card_subscription(client, auth_headers, session_factory, monkeypatch):
    await _add_subscription(session_factory)
    calls = []

    def fake_modify(subscription_id, **kwargs):
        calls.append((subscription_id, kwargs))
        return SimpleNamespace(status="active", cancel_at_period_end=True)

    monkeypatch.setattr(stripe.Subscription, "modify", fake_modify)

    response = await client.post("/api/billing/cancel", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["cancel_at_period_end"] is True
    assert calls[0][0] == "sub_live"
    assert calls[0][1]["cancel_at_period_end"] is True


async def test_cancel_without_card_subscription(client, auth_headers):
    response = await client.post("/api/billing/cancel", headers=auth_headers)

    assert response.status_code == 404


# ── Webhooks ─────────────────────────────────────────────────────────────────
async def test_stripe_webhook_applies_subscription(client, auth_headers, session_factory):
    payload = encode(stripe_subscription_event("customer.subscription.created"))

    response = await client.post(
        "/api/webhooks/stripe", content=payload, headers={"stripe-signature": stripe_signature(payload)}
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "applied"}
    async with session_factory() as session:
        assert (await session.get(User, "user_1")).plan == "pro"


async def test_stripe_webhook_bad_signature_writes_nothing(client, user, session_factory):
    payload = encode(stripe_subscription_event("customer.subscription.created"))

    response = await client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": stripe_signature(payload, secret="whsec_wrong")},
    )

    assert response.status_code == 401
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(Subscription)) == 0


async def test_stripe_webhook_ignores_other_events(client):
    payload = encode({"id": "evt_x", "type": "charge.refunded", "data": {"object": {}}})

    response = await client.post(
        "/api/webhooks/stripe", content=payload, headers={"stripe-signature": stripe_signature(payload)}
    )

    assert response.json()["outcome"] == "ignored"


async def test_crypto_payment_end_to_end(client, auth_headers, session_factory):
    created = await client.post("/api/billing/crypto/invoice", json=INVOICE_REQUEST, headers=auth_headers)
    invoice_id = created.json()["invoice_id"]

    for status in ("waiting", "confirming", "finished"):
        payload = ipn_payload(status, invoice_id=invoice_id)
        response = await client.post(
            "/api/webhooks/nowpayments",
            content=json.dumps(payload).encode("utf-8"),
            headers={"x-nowpayments-sig": ipn_signature(payload)},
        )
        assert response.status_code == 200
        assert response.json()["outcome"] == "applied"

    entitlements = (await client.get("/api/billing/entitlements", headers=auth_headers)).json()
    assert entitlements["plan"] == "pro"
    assert entitlements["payment_method"] == "crypto"

    payment = (await client.get(f"/api/billing/crypto/invoice/{invoice_id}", headers=auth_headers)).json()
    assert payment["status"] == "finished"
    assert payment["nowpayments_payment_id"] == "5077125051"

    subscription = (await client.get("/api/billing/subscription", headers=auth_headers)).json()
    assert subscription["id"] == "crypto_5077125051"
    assert subscription["pay_currency"] == "BTC"


async def test_ipn_for_unknown_invoice_is_acknowledged(client, user, session_factory):
    payload = ipn_payload("finished", invoice_id="999999")

    response = await client.post(
        "/api/webhooks/nowpayments",
        content=json.dumps(payload).encode("utf-8"),
        headers={"x-nowpayments-sig": ipn_signature(payload)},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "not_found"
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(Subscription)) == 0


async def test_ipn_bad_signature_rejected(client, user):
    payload = ipn_payload("finished")

    response = await client.post(
        "/api/webhooks/nowpayments",
        content=json.dumps(payload).encode("utf-8"),
        headers={"x-nowpayments-sig": "00" * 64},
    )

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "invalid_signature"
