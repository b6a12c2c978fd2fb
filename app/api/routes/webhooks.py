"""
CryptoScope Backend — Payment Webhooks
Inbound Stripe events and NOWPayments IPNs. Both read the raw request body,
verify the provider signature before touching the database, and hand a
domain event to the reconciler.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_crypto_adapter, get_reconciler, get_stripe_adapter
from app.core.database import get_db
from app.core.errors import InvalidSignature
from app.schemas.schemas import WebhookAck
from app.services.billing import StripeAdapter
from app.services.crypto import NowPaymentsAdapter
from app.services.reconciler import Outcome, SubscriptionReconciler

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/stripe", response_model=WebhookAck, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Handle Stripe webhook events (works for both test and live modes)."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe_adapter.verify_and_parse(payload, sig_header)
    except InvalidSignature as e:
        logger.warning(f"Stripe webhook rejected: {e.message}")
        raise

    if event is None:
        return WebhookAck(outcome=Outcome.IGNORED.value)

    logger.info(f"Stripe webhook ({stripe_adapter.mode}): {type(event).__name__}")
    outcome = await reconciler.apply_card_event(db, event)
    return WebhookAck(outcome=outcome.value)


@router.post("/nowpayments", response_model=WebhookAck, include_in_schema=False)
async def nowpayments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    crypto: NowPaymentsAdapter = Depends(get_crypto_adapter),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    NOWPayments IPN. Unknown invoices are acknowledged with 200 so the
    provider stops retrying; a retry can't fix a local mismatch.
    """
    payload = await request.body()
    signature = request.headers.get("x-nowpayments-sig")

    try:
        event = crypto.parse_ipn(payload, signature)
    except InvalidSignature as e:
        logger.warning(f"NOWPayments IPN rejected: {e.message}")
        raise

    logger.info(
        f"NOWPayments IPN: payment {event.payment_id} invoice {event.invoice_id} "
        f"status {event.provider_status}"
    )
    outcome = await reconciler.apply_crypto_event(db, event)
    return WebhookAck(outcome=outcome.value)
