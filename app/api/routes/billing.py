"""
CryptoScope Backend — Billing Routes
Card (Stripe) and crypto (NOWPayments) subscription endpoints.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_config, get_crypto_adapter, get_stripe_adapter
from app.core.config import BillingConfig
from app.core.database import get_db
from app.core.security import get_current_user
from app.models.user import User
from app.schemas.schemas import (
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CryptoInvoiceRequest,
    CryptoInvoiceResponse,
    CryptoPaymentResponse,
    EntitlementsResponse,
    PaymentHistoryResponse,
    PortalRequest,
    PortalResponse,
    PricingResponse,
    SubscriptionResponse,
)
from app.services import billing_service
from app.services.billing import StripeAdapter
from app.services.crypto import NowPaymentsAdapter

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get(
    "/config",
    summary="Get billing config",
    description="Get the current Stripe configuration (publishable key and mode).",
)
async def get_billing_config_route(config: BillingConfig = Depends(get_billing_config)):
    """Return the publishable key and mode for frontend Stripe.js."""
    return {
        "stripe_mode": config.stripe_mode,
        "publishable_key": config.stripe_publishable_key,
        "crypto_currencies": ["BTC", "SOL"],
    }


@router.get(
    "/plans",
    response_model=PricingResponse,
    summary="Get plan pricing",
    description="USD pricing and limits per plan, with an optional live crypto estimate.",
)
async def get_plans(
    currency: Optional[str] = Query(default=None, pattern="^(BTC|SOL)$"),
    crypto: NowPaymentsAdapter = Depends(get_crypto_adapter),
):
    plans = await billing_service.get_pricing(crypto, currency)
    return PricingResponse(plans=plans, currency=currency)


@router.get(
    "/subscription",
    response_model=Optional[SubscriptionResponse],
    summary="Get current subscription",
    description="The subscription with the latest period end, or null.",
)
async def get_subscription_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    subscription = await billing_service.get_subscription(db, current_user.id)
    if not subscription:
        return None
    return SubscriptionResponse.model_validate(subscription)


@router.get(
    "/entitlements",
    response_model=EntitlementsResponse,
    summary="Get effective entitlements",
    description="The plan and limits in effect right now, with crypto expiry applied.",
)
async def get_entitlements(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await billing_service.get_entitlements(db, current_user.id)


@router.get(
    "/history",
    response_model=PaymentHistoryResponse,
    summary="Get crypto payment history",
)
async def get_payment_history(
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payments = await billing_service.get_payment_history(db, current_user.id, limit=limit)
    return PaymentHistoryResponse(
        payments=[CryptoPaymentResponse.model_validate(p) for p in payments],
        total=len(payments),
    )


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    summary="Create checkout session",
    description="Create a Stripe Checkout session for a card subscription.",
)
async def create_checkout(
    request: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
):
    session = await billing_service.create_checkout(
        db,
        stripe_adapter,
        current_user,
        plan=request.plan,
        billing_period=request.billing_period,
        return_url=request.return_url,
    )
    return CheckoutResponse(**session)


@router.post(
    "/portal",
    response_model=PortalResponse,
    summary="Open billing portal",
    description="Stripe-hosted page to manage or cancel a card subscription.",
)
async def create_portal(
    request: PortalRequest,
    current_user: User = Depends(get_current_user),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
):
    url = await billing_service.create_billing_portal(stripe_adapter, current_user, request.return_url)
    return PortalResponse(url=url)


@router.post(
    "/cancel",
    response_model=CancelResponse,
    summary="Cancel subscription",
    description="Cancel your card subscription at the end of the current billing period.",
)
async def cancel_sub(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    stripe_adapter: StripeAdapter = Depends(get_stripe_adapter),
):
    result = await billing_service.cancel_card_subscription(db, stripe_adapter, current_user.id)
    return CancelResponse(
        message="Subscription will be canceled at the end of the billing period",
        **result,
    )


@router.post(
    "/crypto/invoice",
    response_model=CryptoInvoiceResponse,
    summary="Create crypto invoice",
    description="Create a fixed-rate BTC or SOL invoice for one billing period.",
)
async def create_crypto_invoice(
    request: CryptoInvoiceRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    crypto: NowPaymentsAdapter = Depends(get_crypto_adapter),
):
    invoice = await billing_service.create_crypto_invoice(
        db,
        crypto,
        current_user,
        plan=request.plan,
        billing_period=request.billing_period,
        currency=request.currency,
        return_url=request.return_url,
        cancel_url=request.cancel_url,
    )
    return CryptoInvoiceResponse(**invoice)


@router.get(
    "/crypto/invoice/{invoice_id}",
    response_model=CryptoPaymentResponse,
    summary="Get crypto payment status",
)
async def get_crypto_payment_status(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    payment = await billing_service.get_crypto_payment(db, current_user.id, invoice_id)
    return CryptoPaymentResponse.model_validate(payment)
