"""
CryptoScope Backend — Billing Service
Request-facing billing operations. Every function takes the authenticated
user explicitly; nothing here reads request context.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, SubscriptionConflict
from app.models.crypto_payment import CryptoPayment
from app.models.subscription import Subscription
from app.models.user import User
from app.services.billing import StripeAdapter
from app.services.crypto import NowPaymentsAdapter
from app.services.plans import PLANS, effective_plan, limits_for
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

HOLDING_STATUSES = ("active", "trialing")
CANCELABLE_STATUSES = ("active", "trialing", "past_due")


async def get_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    """The authoritative subscription: the user's row with the latest period end."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.current_period_end.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_entitlements(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    subscription = await get_subscription(db, user_id)
    plan = effective_plan(subscription, now)
    limits = limits_for(plan)
    return {
        "plan": plan,
        "expires_at": as_utc(subscription.current_period_end) if plan != "free" else None,
        "payment_method": subscription.payment_method if plan != "free" else None,
        "limits": {
            "accounts": limits.accounts,
            "history_days": limits.history_days,
            "competitors": limits.competitors,
            "mention_alerts": limits.mention_alerts,
        },
    }


async def get_payment_history(db: AsyncSession, user_id: str, limit: int = 20) -> List[CryptoPayment]:
    """Crypto payments for the user, newest first. Audit trail only."""
    result = await db.execute(
        select(CryptoPayment)
        .where(CryptoPayment.user_id == user_id)
        .order_by(CryptoPayment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_crypto_payment(db: AsyncSession, user_id: str, invoice_id: str) -> CryptoPayment:
    result = await db.execute(
        select(CryptoPayment).where(CryptoPayment.nowpayments_invoice_id == invoice_id)
    )
    payment = result.scalar_one_or_none()
    if not payment or payment.user_id != user_id:
        raise NotFound("Crypto payment not found")
    return payment


async def find_unexpired_access(
    db: AsyncSession, user_id: str, now: Optional[datetime] = None
) -> Optional[Subscription]:
    now = now or utcnow()
    subscription = await get_subscription(db, user_id)
    if (
        subscription
        and subscription.status in HOLDING_STATUSES
        and as_utc(subscription.current_period_end) > now
    ):
        return subscription
    return None


def _conflict(subscription: Subscription) -> SubscriptionConflict:
    expires = as_utc(subscription.current_period_end)
    return SubscriptionConflict(
        f"You already have an active {subscription.plan} subscription until "
        f"{expires.strftime('%Y-%m-%d')}. Cancel it first or wait until expiry.",
        details={"plan": subscription.plan, "current_period_end": expires.isoformat()},
    )


async def create_checkout(
    db: AsyncSession,
    stripe_adapter: StripeAdapter,
    user: User,
    plan: str,
    billing_period: str,
    return_url: str,
) -> dict:
    existing = await find_unexpired_access(db, user.id)
    if existing:
        # Stripe itself prevents duplicate subscriptions on one customer
        logger.info(
            f"User {user.id} starting card checkout while holding {existing.plan} "
            f"until {existing.current_period_end}"
        )
    return await stripe_adapter.create_checkout(db, user, plan, billing_period, return_url)


async def create_crypto_invoice(
    db: AsyncSession,
    crypto_adapter: NowPaymentsAdapter,
    user: User,
    plan: str,
    billing_period: str,
    currency: str,
    return_url: str,
    cancel_url: str,
) -> dict:
    existing = await find_unexpired_access(db, user.id)
    if existing:
        raise _conflict(existing)
    return await crypto_adapter.create_invoice(
        db,
        user_id=user.id,
        plan=plan,
        billing_period=billing_period,
        currency=currency,
        return_url=return_url,
        cancel_url=cancel_url,
    )


async def create_billing_portal(stripe_adapter: StripeAdapter, user: User, return_url: str) -> str:
    if not user.stripe_customer_id:
        raise NotFound("No Stripe customer found for this user")
    return await stripe_adapter.create_billing_portal(user.stripe_customer_id, return_url)


async def cancel_card_subscription(db: AsyncSession, stripe_adapter: StripeAdapter, user_id: str) -> dict:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.payment_method == "stripe",
            Subscription.status.in_(CANCELABLE_STATUSES),
        )
        .order_by(Subscription.current_period_end.desc())
        .limit(1)
    )
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise NotFound("No active card subscription found")
    return await stripe_adapter.cancel_at_period_end(subscription.id)


async def get_pricing(crypto_adapter: NowPaymentsAdapter, ticker: Optional[str] = None) -> dict:
    pricing = {}
    for plan, config in PLANS.items():
        entry = {
            "name": config.name,
            "usd_monthly": config.monthly_cents / 100,
            "usd_annual": config.annual_cents / 100,
            "limits": {
                "accounts": config.limits.accounts,
                "history_days": config.limits.history_days,
                "competitors": config.limits.competitors,
                "mention_alerts": config.limits.mention_alerts,
            },
        }
        if ticker:
            entry["crypto_monthly"] = await crypto_adapter.estimate_price(config.monthly_cents / 100, ticker)
            entry["crypto_annual"] = await crypto_adapter.estimate_price(config.annual_cents / 100, ticker)
        pricing[plan.value] = entry
    return pricing
