import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_MODE"] = "test"
os.environ["NOWPAYMENTS_API_KEY"] = "np-test-key"

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import get_crypto_adapter, get_reconciler, get_stripe_adapter
from app.core.config import BillingConfig
from app.core.database import Base, get_db
from app.core.security import create_access_token
from app.main import app
from app.models.user import User
from app.services.billing import StripeAdapter
from app.services.crypto import NowPaymentsAdapter, sign_ipn
from app.services.reconciler import SubscriptionReconciler

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
IPN_SECRET = "ipn-test-secret"
PRICE_IDS = {
    ("pro", "monthly"): "price_pro_monthly",
    ("pro", "annual"): "price_pro_annual",
    ("agency", "monthly"): "price_agency_monthly",
    ("agency", "annual"): "price_agency_annual",
}
NOWPAYMENTS_URL = "https://api.nowpayments.test/v1"


# ── Database ─────────────────────────────────────────────────────────────────
@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(session_factory):
    async with session_factory() as session:
        user = User(id="user_1", email="creator@example.com", name="Crypto Creator", plan="free")
        session.add(user)
        await session.commit()
    return user


# ── Adapters ─────────────────────────────────────────────────────────────────
@pytest.fixture
def billing_config():
    return BillingConfig(
        stripe_mode="test",
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        stripe_webhook_tolerance=300,
        stripe_price_ids=dict(PRICE_IDS),
        nowpayments_api_key="np-test-key",
        nowpayments_ipn_secret=IPN_SECRET,
        nowpayments_base_url=NOWPAYMENTS_URL,
        crypto_invoice_ttl_minutes=60,
        app_url="https://cryptoscope.test",
    )


@pytest.fixture
def stripe_adapter(billing_config):
    return StripeAdapter(billing_config)


class FakeNowPayments:
    """Records outgoing NOWPayments requests and answers with canned responses."""

    def __init__(self):
        self.requests = []
        self.invoice_status = 200
        self.invoice_body = {
            "id": 4522625843,
            "order_id": "",
            "invoice_url": "https://nowpayments.io/payment/?iid=4522625843",
        }
        self.estimate_status = 200
        self.estimated_amount = 0.00042

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/invoice"):
            return httpx.Response(self.invoice_status, json=self.invoice_body)
        if request.url.path.endswith("/estimate"):
            return httpx.Response(self.estimate_status, json={"estimated_amount": self.estimated_amount})
        return httpx.Response(404, json={"message": "not found"})

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def nowpayments():
    return FakeNowPayments()


@pytest.fixture
async def crypto_adapter(billing_config, nowpayments):
    async with httpx.AsyncClient(transport=httpx.MockTransport(nowpayments)) as client:
        yield NowPaymentsAdapter(billing_config, client=client)


@pytest.fixture
def reconciler():
    return SubscriptionReconciler()


# ── HTTP client ──────────────────────────────────────────────────────────────
@pytest.fixture
async def client(session_factory, stripe_adapter, crypto_adapter, reconciler):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_adapter] = lambda: stripe_adapter
    app.dependency_overrides[get_crypto_adapter] = lambda: crypto_adapter
    app.dependency_overrides[get_reconciler] = lambda: reconciler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    token = create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


# ── Payload builders ─────────────────────────────────────────────────────────
def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp or time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_subscription_event(
    event_type: str,
    subscription_id: str = "sub_123",
    user_id: str = "user_1",
    status: str = "active",
    price_id: str = "price_pro_monthly",
    period_start: datetime = None,
    period_end: datetime = None,
    cancel_at_period_end: bool = False,
    customer: str = "cus_123",
) -> dict:
    period_start = period_start or datetime(2026, 10, 1, tzinfo=timezone.utc)
    period_end = period_end or period_start + timedelta(days=30)
    return {
        "id": f"evt_{subscription_id}_{event_type}",
        "type": event_type,
        "data": {
            "object": {
                "id": subscription_id,
                "object": "subscription",
                "customer": customer,
                "status": status,
                "metadata": {"userId": user_id} if user_id else {},
                "items": {"data": [{"price": {"id": price_id}}]},
                "current_period_start": int(period_start.timestamp()),
                "current_period_end": int(period_end.timestamp()),
                "cancel_at_period_end": cancel_at_period_end,
            }
        },
    }


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def ipn_payload(
    status: str,
    invoice_id="4522625843",
    payment_id=5077125051,
    actually_paid=0.0021,
    pay_currency="btc",
    order_id="user_1_pro_monthly_1760700000000",
) -> dict:
    return {
        "payment_id": payment_id,
        "invoice_id": int(invoice_id) if invoice_id and str(invoice_id).isdigit() else invoice_id,
        "payment_status": status,
        "pay_address": "bc1qexampleaddress",
        "price_amount": 29,
        "price_currency": "usd",
        "pay_amount": 0.0021,
        "actually_paid": actually_paid,
        "pay_currency": pay_currency,
        "order_id": order_id,
        "order_description": "CryptoScope Pro - Monthly",
        "outcome_amount": 0.00205,
        "outcome_currency": "btc",
        "fee": {"currency": "btc", "depositFee": 0, "withdrawalFee": 0, "serviceFee": 0},
    }


def ipn_signature(payload: dict, secret: str = IPN_SECRET) -> str:
    return sign_ipn(payload, secret)
