"""
CryptoScope — Plan Catalog
Static pricing and feature limits per subscription tier.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from app.utils.dates import as_utc, utcnow


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    AGENCY = "agency"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class CryptoCurrency(str, Enum):
    BITCOIN = "bitcoin"
    SOLANA = "solana"


# Ticker symbols NOWPayments expects
CRYPTO_TICKERS = {
    CryptoCurrency.BITCOIN: "BTC",
    CryptoCurrency.SOLANA: "SOL",
}

PERIOD_DAYS = {
    BillingPeriod.MONTHLY: 30,
    BillingPeriod.ANNUAL: 365,
}


@dataclass(frozen=True)
class PlanLimits:
    accounts: int
    history_days: int
    competitors: int
    mention_alerts: int


@dataclass(frozen=True)
class PlanConfig:
    name: str
    monthly_cents: int
    annual_cents: int  # discounted, not monthly * 12
    limits: PlanLimits


PLANS = {
    Plan.PRO: PlanConfig(
        name="Pro",
        monthly_cents=2900,  # $29
        annual_cents=27840,  # $278.40/yr, 20% off
        limits=PlanLimits(accounts=3, history_days=90, competitors=5, mention_alerts=50),
    ),
    Plan.AGENCY: PlanConfig(
        name="Agency",
        monthly_cents=9900,  # $99
        annual_cents=95040,  # $950.40/yr, 20% off
        limits=PlanLimits(accounts=10, history_days=365, competitors=20, mention_alerts=200),
    ),
}

FREE_LIMITS = PlanLimits(accounts=1, history_days=7, competitors=0, mention_alerts=5)

# Statuses that still grant the subscribed plan
ENTITLED_STATUSES = frozenset({"active", "trialing", "past_due"})


def get_plan(plan) -> PlanConfig:
    """Look up a paid plan. The free tier has no price; asking for one is a bug."""
    return PLANS[Plan(plan)]


def price_cents(plan, period) -> int:
    config = get_plan(plan)
    if BillingPeriod(period) == BillingPeriod.ANNUAL:
        return config.annual_cents
    return config.monthly_cents


def period_days(period) -> int:
    return PERIOD_DAYS[BillingPeriod(period)]


def limits_for(plan) -> PlanLimits:
    if Plan(plan) == Plan.FREE:
        return FREE_LIMITS
    return get_plan(plan).limits


def effective_plan(subscription, now: Optional[datetime] = None) -> str:
    """
    The plan a subscription actually grants at `now`.

    Crypto subscriptions stay "active" in storage after their period ends;
    nothing sweeps them. Expiry is decided here, at read time, by comparing
    against current_period_end. Card subscriptions are renewed or canceled by
    Stripe, so only their status is consulted.
    """
    if subscription is None or subscription.status not in ENTITLED_STATUSES:
        return Plan.FREE.value
    if subscription.payment_method == "crypto":
        now = now or utcnow()
        if as_utc(subscription.current_period_end) <= now:
            return Plan.FREE.value
    return subscription.plan
