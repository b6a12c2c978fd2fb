"""
CryptoScope — Billing Domain Events
Provider-neutral events the adapters translate webhooks into. The
reconciler only ever sees these types, never Stripe or NOWPayments payloads.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class SubscriptionUpserted:
    id: str
    user_id: Optional[str]
    customer_id: Optional[str]
    status: str
    plan: str
    price_id: Optional[str]
    period_start: datetime
    period_end: datetime
    cancel_at_period_end: bool


@dataclass(frozen=True)
class SubscriptionCanceled:
    id: str
    user_id: Optional[str]
    customer_id: Optional[str]
    plan: str
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class CustomerLinked:
    """Checkout finished; remember which Stripe customer belongs to the user."""
    customer_id: str
    user_id: str


@dataclass(frozen=True)
class CryptoPaymentUpdated:
    payment_id: Optional[str]
    invoice_id: Optional[str]
    order_id: Optional[str]
    status: str  # already mapped to the internal vocabulary
    provider_status: str
    pay_currency: Optional[str] = None
    actually_paid: Optional[str] = None

    @property
    def is_confirmation(self) -> bool:
        return self.status in ("confirmed", "finished")


CardEvent = Union[SubscriptionUpserted, SubscriptionCanceled, CustomerLinked]
