"""
CryptoScope Backend — Subscription Reconciler
Applies verified provider events from both payment rails to the unified
Subscription / CryptoPayment tables and the cached User.plan.

Every logical id is written with a single atomic statement (native upsert or
conditional UPDATE ... RETURNING) so concurrent or repeated webhook
deliveries can't interleave a read and a write.
"""
import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import upsert_statement
from app.models.crypto_payment import CryptoPayment
from app.models.subscription import Subscription
from app.models.user import User
from app.services.events import (
    CardEvent,
    CryptoPaymentUpdated,
    CustomerLinked,
    SubscriptionCanceled,
    SubscriptionUpserted,
)
from app.services.plans import ENTITLED_STATUSES, BillingPeriod, Plan, period_days
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    STALE = "stale"


# Confirmation strength of the happy-path statuses
_PROGRESS = ("pending", "waiting", "confirming", "confirmed", "finished")
_SUCCESS = ("confirmed", "finished")
_FAILURE = ("failed", "expired")


def allowed_previous_statuses(new_status: str) -> tuple:
    """
    Payment statuses a CryptoPayment may move to `new_status` from.

    Progress never goes backwards (a late "confirming" can't undo
    "finished"). Failures only land on unfinished payments. A confirmation
    may still arrive after "expired"/"failed" when the user paid late, and
    "refunded" is accepted from anywhere.
    """
    if new_status == "refunded":
        return _PROGRESS + _FAILURE + ("refunded",)
    if new_status in _FAILURE:
        return ("pending", "waiting", "confirming", new_status)
    rank = _PROGRESS.index(new_status)
    allowed = _PROGRESS[: rank + 1]
    if new_status in _SUCCESS:
        allowed += _FAILURE
    return allowed


def crypto_subscription_id(payment_ref: str) -> str:
    return f"crypto_{payment_ref}"


class SubscriptionReconciler:

    # ── Card rail ────────────────────────────────────────────────────────
    async def apply_card_event(self, db: AsyncSession, event: CardEvent) -> Outcome:
        if isinstance(event, CustomerLinked):
            return await self._link_customer(db, event)

        user_id = await self._resolve_user(db, event.user_id, event.customer_id)
        if user_id is None:
            logger.warning(
                f"Dropping Stripe event for subscription {event.id}: no user for "
                f"metadata={event.user_id} customer={event.customer_id}"
            )
            return Outcome.NOT_FOUND

        if isinstance(event, SubscriptionCanceled):
            return await self._cancel_card_subscription(db, user_id, event)
        if isinstance(event, SubscriptionUpserted):
            return await self._upsert_card_subscription(db, user_id, event)

        logger.info(f"Ignoring unsupported card event {type(event).__name__}")
        return Outcome.IGNORED

    async def _resolve_user(
        self, db: AsyncSession, user_id: Optional[str], customer_id: Optional[str]
    ) -> Optional[str]:
        if user_id:
            found = await db.scalar(select(User.id).where(User.id == user_id))
            if found:
                return found
        if customer_id:
            return await db.scalar(select(User.id).where(User.stripe_customer_id == customer_id))
        return None

    async def _link_customer(self, db: AsyncSession, event: CustomerLinked) -> Outcome:
        result = await db.execute(
            update(User)
            .where(User.id == event.user_id, User.stripe_customer_id.is_(None))
            .values(stripe_customer_id=event.customer_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Linked Stripe customer {event.customer_id} to user {event.user_id}")
            return Outcome.APPLIED
        return Outcome.IGNORED

    async def _upsert_card_subscription(
        self, db: AsyncSession, user_id: str, event: SubscriptionUpserted
    ) -> Outcome:
        """
        Insert or refresh the row keyed by the Stripe subscription id.

        The conflict update is skipped when the stored row is already
        canceled (cancellation is final regardless of delivery order) or
        when the incoming period ends before the stored one (an older event
        delivered late). Stripe keeps current_period_end monotonic per
        subscription, which is what makes the second guard sound.
        """
        now = utcnow()
        stmt = upsert_statement(db, Subscription).values(
            id=event.id,
            user_id=user_id,
            status=event.status,
            plan=event.plan,
            payment_method="stripe",
            stripe_price_id=event.price_id,
            current_period_start=event.period_start,
            current_period_end=event.period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.id],
            set_={
                "status": stmt.excluded.status,
                "plan": stmt.excluded.plan,
                "stripe_price_id": stmt.excluded.stripe_price_id,
                "current_period_start": stmt.excluded.current_period_start,
                "current_period_end": stmt.excluded.current_period_end,
                "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                "updated_at": stmt.excluded.updated_at,
            },
            where=and_(
                Subscription.status != "canceled",
                stmt.excluded.current_period_end >= Subscription.current_period_end,
            ),
        ).returning(Subscription.id)

        written = (await db.execute(stmt)).first()
        if written is None:
            logger.info(f"Stripe subscription {event.id}: stale or already canceled, left unchanged")
            return Outcome.STALE

        # incomplete/unpaid/canceled rows keep their plan but grant nothing
        plan = event.plan if event.status in ENTITLED_STATUSES else Plan.FREE.value
        await self._set_user_plan(db, user_id, plan)
        logger.info(f"Stripe subscription {event.id} -> {event.status} ({event.plan}) for user {user_id}")
        return Outcome.APPLIED

    async def _cancel_card_subscription(
        self, db: AsyncSession, user_id: str, event: SubscriptionCanceled
    ) -> Outcome:
        now = utcnow()
        stmt = upsert_statement(db, Subscription).values(
            id=event.id,
            user_id=user_id,
            status="canceled",
            plan=event.plan,
            payment_method="stripe",
            stripe_price_id=event.price_id,
            current_period_start=event.period_start or now,
            current_period_end=event.period_end or now,
            cancel_at_period_end=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.id],
            set_={"status": "canceled", "cancel_at_period_end": True, "updated_at": now},
        )
        await db.execute(stmt)

        await self._set_user_plan(db, user_id, Plan.FREE.value)
        logger.info(f"Stripe subscription {event.id} canceled, user {user_id} downgraded to free")
        return Outcome.APPLIED

    # ── Crypto rail ──────────────────────────────────────────────────────
    async def apply_crypto_event(self, db: AsyncSession, event: CryptoPaymentUpdated) -> Outcome:
        """
        Record a NOWPayments status change and grant access on confirmation.

        The payment is found by invoice id (the payment id may not have
        existed when the invoice was created). An IPN for an unknown invoice
        is dropped: creating a row from a webhook alone would let a forged
        notification mint entitlement.
        """
        if event.invoice_id:
            key = CryptoPayment.nowpayments_invoice_id == event.invoice_id
        elif event.order_id:
            key = CryptoPayment.order_id == event.order_id
        else:
            logger.warning(f"Dropping IPN for payment {event.payment_id}: no invoice or order id")
            return Outcome.NOT_FOUND

        now = utcnow()
        values = {"status": event.status, "updated_at": now}
        if event.payment_id:
            values["nowpayments_payment_id"] = event.payment_id
        if event.actually_paid:
            values["crypto_amount"] = event.actually_paid
        if event.is_confirmation:
            # First confirmation fixes the period; later ones keep it.
            period_end = case(
                (
                    CryptoPayment.billing_period == BillingPeriod.ANNUAL.value,
                    now + timedelta(days=period_days(BillingPeriod.ANNUAL)),
                ),
                else_=now + timedelta(days=period_days(BillingPeriod.MONTHLY)),
            )
            values.update(
                confirmed_at=func.coalesce(CryptoPayment.confirmed_at, now),
                period_start=func.coalesce(CryptoPayment.period_start, now),
                period_end=func.coalesce(CryptoPayment.period_end, period_end),
            )

        result = await db.execute(
            update(CryptoPayment)
            .where(key, CryptoPayment.status.in_(allowed_previous_statuses(event.status)))
            .values(**values)
            .returning(
                CryptoPayment.id,
                CryptoPayment.user_id,
                CryptoPayment.plan,
                CryptoPayment.currency,
                CryptoPayment.nowpayments_payment_id,
                CryptoPayment.period_start,
                CryptoPayment.period_end,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()

        if row is None:
            current = await db.scalar(select(CryptoPayment.status).where(key))
            if current is None:
                logger.warning(
                    f"Dropping IPN for unknown invoice={event.invoice_id} order={event.order_id} "
                    f"payment={event.payment_id}"
                )
                return Outcome.NOT_FOUND
            logger.info(
                f"Crypto payment {event.invoice_id or event.order_id}: ignoring "
                f"{event.provider_status} after {current}"
            )
            return Outcome.STALE

        logger.info(f"Crypto payment {row.id} -> {event.status} (provider: {event.provider_status})")
        if not event.is_confirmation:
            return Outcome.APPLIED

        await self._activate_crypto_subscription(db, row, event)
        return Outcome.APPLIED

    async def _activate_crypto_subscription(self, db: AsyncSession, payment, event: CryptoPaymentUpdated):
        """
        Upsert the synthetic subscription for a confirmed payment.

        The period comes from the payment row, fixed at first confirmation,
        and is never part of the conflict update: a retried "confirmed" or a
        "finished" following "confirmed" cannot extend access.
        """
        now = utcnow()
        subscription_id = crypto_subscription_id(payment.nowpayments_payment_id or payment.id)
        stmt = upsert_statement(db, Subscription).values(
            id=subscription_id,
            user_id=payment.user_id,
            status="active",
            plan=payment.plan,
            payment_method="crypto",
            pay_currency=event.pay_currency.upper() if event.pay_currency else payment.currency,
            stripe_price_id=None,
            current_period_start=payment.period_start,
            current_period_end=payment.period_end,
            cancel_at_period_end=True,  # crypto access has a hard expiry
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.id],
            set_={"status": "active", "plan": stmt.excluded.plan, "updated_at": now},
        )
        await db.execute(stmt)

        await self._set_user_plan(db, payment.user_id, payment.plan)
        logger.info(
            f"Crypto subscription {subscription_id} active for user {payment.user_id} "
            f"({payment.plan}) until {payment.period_end}"
        )

    # ── Shared ───────────────────────────────────────────────────────────
    async def _set_user_plan(self, db: AsyncSession, user_id: str, plan: str):
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(plan=plan, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
