"""
CryptoScope Backend — Pydantic Schemas
Request/response models for billing and payment webhooks.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


PaidPlan = Literal["pro", "agency"]
Period = Literal["monthly", "annual"]


# ── Plans ────────────────────────────────────────────────────────────────────
class PlanLimitsResponse(BaseModel):
    accounts: int
    history_days: int
    competitors: int
    mention_alerts: int


class CryptoEstimate(BaseModel):
    amount: float
    rate: float


class PlanPricing(BaseModel):
    name: str
    usd_monthly: float
    usd_annual: float
    limits: PlanLimitsResponse
    crypto_monthly: Optional[CryptoEstimate] = None
    crypto_annual: Optional[CryptoEstimate] = None


class PricingResponse(BaseModel):
    plans: Dict[str, PlanPricing]
    currency: Optional[str] = None


# ── Subscription ─────────────────────────────────────────────────────────────
class SubscriptionResponse(BaseModel):
    id: str
    plan: str
    status: str
    payment_method: str
    pay_currency: Optional[str]
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    created_at: datetime

    class Config:
        from_attributes = True


class EntitlementsResponse(BaseModel):
    plan: str
    expires_at: Optional[datetime]
    payment_method: Optional[str]
    limits: PlanLimitsResponse


# ── Card rail ────────────────────────────────────────────────────────────────
class CheckoutRequest(BaseModel):
    plan: PaidPlan = Field(description="Plan to subscribe to: pro, agency")
    billing_period: Period = Field(default="monthly")
    return_url: str = Field(description="Where Stripe sends the user afterwards")


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PortalRequest(BaseModel):
    return_url: str


class PortalResponse(BaseModel):
    url: str


class CancelResponse(BaseModel):
    message: str
    status: str
    cancel_at_period_end: bool


# ── Crypto rail ──────────────────────────────────────────────────────────────
class CryptoInvoiceRequest(BaseModel):
    plan: PaidPlan
    billing_period: Period = Field(default="monthly")
    currency: Literal["bitcoin", "solana"]
    return_url: str
    cancel_url: str


class CryptoInvoiceResponse(BaseModel):
    invoice_id: str
    hosted_url: Optional[str]
    price_usd: float
    pay_currency: str
    expires_at: datetime
    status_url: str


class CryptoPaymentResponse(BaseModel):
    id: str
    nowpayments_invoice_id: str
    nowpayments_payment_id: Optional[str]
    plan: str
    billing_period: str
    currency: str
    price_usd: int
    crypto_amount: Optional[str]
    status: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    confirmed_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentHistoryResponse(BaseModel):
    payments: List[CryptoPaymentResponse]
    total: int


# ── Webhooks ─────────────────────────────────────────────────────────────────
class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None


# ── Health ───────────────────────────────────────────────────────────────────
class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    stripe_mode: str
