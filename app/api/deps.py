"""
CryptoScope — API Dependencies
Payment adapters built once from the resolved BillingConfig.
"""

from functools import lru_cache

from app.core.config import BillingConfig, settings
from app.services.billing import StripeAdapter
from app.services.crypto import NowPaymentsAdapter
from app.services.reconciler import SubscriptionReconciler


@lru_cache
def get_billing_config() -> BillingConfig:
    return settings.billing_config()


@lru_cache
def get_stripe_adapter() -> StripeAdapter:
    return StripeAdapter(get_billing_config())


@lru_cache
def get_crypto_adapter() -> NowPaymentsAdapter:
    return NowPaymentsAdapter(get_billing_config())


@lru_cache
def get_reconciler() -> SubscriptionReconciler:
    return SubscriptionReconciler()
