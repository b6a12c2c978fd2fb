"""
CryptoScope Backend — Stripe Adapter
Stripe dual-mode (test/live) integration for the card rail: customers,
subscription checkout, billing portal and webhook verification/mapping.
"""
import json
import logging
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import BillingConfig
from app.core.errors import BadRequest, InvalidSignature, ServiceUnavailable, UpstreamProviderError
from app.models.user import User
from app.services.events import CardEvent, CustomerLinked, SubscriptionCanceled, SubscriptionUpserted
from app.services.plans import BillingPeriod, Plan
from app.utils.dates import from_timestamp

logger = logging.getLogger(__name__)

# Stripe subscription.status -> Subscription.status
STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "canceled",
    "incomplete": "inactive",
    "incomplete_expired": "inactive",
    "paused": "inactive",
}

SUBSCRIPTION_UPSERT_EVENTS = ("customer.subscription.created", "customer.subscription.updated")
SUBSCRIPTION_DELETED_EVENT = "customer.subscription.deleted"
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


def map_stripe_status(status: Optional[str]) -> str:
    return STRIPE_STATUS_MAP.get(status or "", "inactive")


def _with_query(url: str, query: str) -> str:
    return f"{url}{'&' if '?' in url else '?'}{query}"


def _customer_id(obj: dict) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


class StripeAdapter:
    """Card-rail gateway. All credentials come from the injected BillingConfig."""

    def __init__(self, config: BillingConfig):
        self.config = config
        if not config.stripe_webhook_secret:
            logger.warning("Stripe webhook secret not configured - card webhooks will be rejected")

    @property
    def mode(self) -> str:
        return self.config.stripe_mode

    # ── Prices ───────────────────────────────────────────────────────────
    def price_id_for(self, plan: str, period: str) -> str:
        price_id = self.config.stripe_price_ids.get((Plan(plan).value, BillingPeriod(period).value))
        if not price_id:
            raise ServiceUnavailable(
                f"No price ID configured for plan '{plan}' ({period}) in {self.mode} mode"
            )
        return price_id

    def plan_from_price_id(self, price_id: Optional[str]) -> str:
        """Reverse price lookup. Unknown prices resolve to free instead of failing."""
        for (plan, _period), configured in self.config.stripe_price_ids.items():
            if price_id and configured == price_id:
                return plan
        if price_id:
            logger.warning(f"Unrecognized Stripe price {price_id}, treating as free tier")
        return Plan.FREE.value

    # ── Customers & sessions ─────────────────────────────────────────────
    async def get_or_create_customer(self, db: AsyncSession, user: User) -> str:
        """Reuse the stored customer reference or create one for the user."""
        if user.stripe_customer_id:
            return user.stripe_customer_id
        try:
            customer = stripe.Customer.create(
                api_key=self.config.stripe_secret_key,
                email=user.email,
                name=user.name,
                metadata={"userId": user.id, "app": "cryptoscope", "stripe_mode": self.mode},
                idempotency_key=f"customer-{user.id}",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed: {str(e)}")
            raise UpstreamProviderError("stripe", "Could not create billing customer")

        user.stripe_customer_id = customer.id
        await db.flush()
        return customer.id

    async def create_checkout(
        self,
        db: AsyncSession,
        user: User,
        plan: str,
        billing_period: str,
        return_url: str,
    ) -> dict:
        """Create a hosted subscription checkout. State only changes via webhook."""
        price_id = self.price_id_for(plan, billing_period)
        customer_id = await self.get_or_create_customer(db, user)
        try:
            session = stripe.checkout.Session.create(
                api_key=self.config.stripe_secret_key,
                customer=customer_id,
                client_reference_id=user.id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=_with_query(return_url, "success=true&method=stripe"),
                cancel_url=_with_query(return_url, "canceled=true"),
                subscription_data={"metadata": {"userId": user.id, "plan": plan}},
                metadata={"userId": user.id, "plan": plan, "billing_period": billing_period},
                allow_promotion_codes=True,
                billing_address_collection="auto",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed: {str(e)}")
            raise UpstreamProviderError("stripe", "Could not create checkout session")
        return {"checkout_url": session.url, "session_id": session.id}

    async def create_billing_portal(self, customer_id: str, return_url: str) -> str:
        try:
            portal = stripe.billing_portal.Session.create(
                api_key=self.config.stripe_secret_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe billing portal creation failed: {str(e)}")
            raise UpstreamProviderError("stripe", "Could not open billing portal")
        return portal.url

    async def cancel_at_period_end(self, subscription_id: str) -> dict:
        """Ask Stripe to stop renewing. The local row follows via the updated webhook."""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                api_key=self.config.stripe_secret_key,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe cancellation failed: {str(e)}")
            raise UpstreamProviderError("stripe", "Could not cancel subscription")
        return {
            "status": subscription.status,
            "cancel_at_period_end": subscription.cancel_at_period_end,
        }

    # ── Webhooks ─────────────────────────────────────────────────────────
    def verify_and_parse(self, payload: bytes, sig_header: Optional[str]) -> Optional[CardEvent]:
        """
        Verify the Stripe signature over the raw body, then map the event.

        The signature covers the exact bytes received, so verification runs
        before any JSON parsing. Returns None for event kinds we don't handle.
        """
        secret = self.config.stripe_webhook_secret
        if not secret:
            logger.error("Stripe webhook received but no webhook secret is configured")
            raise InvalidSignature("Webhook secret not configured")
        if not sig_header:
            raise InvalidSignature("Missing signature")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                sig_header,
                secret,
                self.config.stripe_webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            raise InvalidSignature("Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise BadRequest("Invalid payload")

        return self.map_event(event)

    def map_event(self, event: dict) -> Optional[CardEvent]:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in SUBSCRIPTION_UPSERT_EVENTS:
            return self._subscription_upserted(obj)
        if event_type == SUBSCRIPTION_DELETED_EVENT:
            return self._subscription_canceled(obj)
        if event_type == CHECKOUT_COMPLETED_EVENT:
            return self._customer_linked(obj)

        logger.info(f"Ignoring Stripe event kind {event_type}")
        return None

    def _price_and_period(self, obj: dict):
        items = (obj.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        price_id = (first.get("price") or {}).get("id")
        # Newer API versions report the period on the item, older on the subscription
        start = obj.get("current_period_start") or first.get("current_period_start")
        end = obj.get("current_period_end") or first.get("current_period_end")
        return price_id, from_timestamp(start), from_timestamp(end)

    def _subscription_upserted(self, obj: dict) -> Optional[SubscriptionUpserted]:
        price_id, start, end = self._price_and_period(obj)
        if not obj.get("id") or start is None or end is None:
            logger.warning(f"Stripe subscription payload missing id or period: {obj.get('id')}")
            return None
        return SubscriptionUpserted(
            id=obj["id"],
            user_id=(obj.get("metadata") or {}).get("userId"),
            customer_id=_customer_id(obj),
            status=map_stripe_status(obj.get("status")),
            plan=self.plan_from_price_id(price_id),
            price_id=price_id,
            period_start=start,
            period_end=end,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )

    def _subscription_canceled(self, obj: dict) -> Optional[SubscriptionCanceled]:
        if not obj.get("id"):
            return None
        price_id, start, end = self._price_and_period(obj)
        return SubscriptionCanceled(
            id=obj["id"],
            user_id=(obj.get("metadata") or {}).get("userId"),
            customer_id=_customer_id(obj),
            plan=self.plan_from_price_id(price_id),
            price_id=price_id,
            period_start=start,
            period_end=end,
        )

    def _customer_linked(self, obj: dict) -> Optional[CustomerLinked]:
        customer_id = _customer_id(obj)
        user_id = obj.get("client_reference_id") or (obj.get("metadata") or {}).get("userId")
        if obj.get("mode") != "subscription" or not customer_id or not user_id:
            return None
        return CustomerLinked(customer_id=customer_id, user_id=user_id)
