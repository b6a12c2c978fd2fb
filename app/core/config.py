"""
CryptoScope Backend — Configuration
Standalone settings with Stripe dual-mode (test/live) toggle and the
NOWPayments crypto rail. The billing adapters never read these values
directly; they receive a BillingConfig resolved once at startup.
"""
from dataclasses import dataclass, field
from typing import Dict, Tuple

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class BillingConfig:
    """Payment-rail credentials resolved for the active Stripe mode."""
    stripe_mode: str
    stripe_secret_key: str
    stripe_publishable_key: str
    stripe_webhook_secret: str
    stripe_webhook_tolerance: int
    # (plan, billing_period) -> Stripe price id
    stripe_price_ids: Dict[Tuple[str, str], str] = field(default_factory=dict)
    nowpayments_api_key: str = ""
    nowpayments_ipn_secret: str = ""
    nowpayments_base_url: str = "https://api.nowpayments.io/v1"
    nowpayments_timeout: float = 15.0
    crypto_invoice_ttl_minutes: int = 60
    app_url: str = "http://localhost:3000"
    app_name: str = "CryptoScope"

    @property
    def ipn_callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/webhooks/nowpayments"


class Settings(BaseSettings):
    # ── Application ──────────────────────────────────────────────────────
    APP_NAME: str = "CryptoScope"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000"
    APP_URL: str = "http://localhost:3000"

    # ── Database ─────────────────────────────────────────────────────────
    DATABASE_URL: str = "postgresql+asyncpg://cryptoscope:changeme@db:5432/cryptoscope"

    # ── Auth / JWT ───────────────────────────────────────────────────────
    SECRET_KEY: str = "change-me-in-production-use-openssl-rand-hex-32"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # ── Stripe Dual-Mode Billing ─────────────────────────────────────────
    STRIPE_MODE: str = "test"  # "test" or "live"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Test mode keys
    STRIPE_TEST_SECRET_KEY: str = ""
    STRIPE_TEST_PUBLISHABLE_KEY: str = ""
    STRIPE_TEST_WEBHOOK_SECRET: str = ""
    STRIPE_TEST_PRO_MONTHLY_PRICE_ID: str = ""
    STRIPE_TEST_PRO_ANNUAL_PRICE_ID: str = ""
    STRIPE_TEST_AGENCY_MONTHLY_PRICE_ID: str = ""
    STRIPE_TEST_AGENCY_ANNUAL_PRICE_ID: str = ""

    # Live mode keys
    STRIPE_LIVE_SECRET_KEY: str = ""
    STRIPE_LIVE_PUBLISHABLE_KEY: str = ""
    STRIPE_LIVE_WEBHOOK_SECRET: str = ""
    STRIPE_LIVE_PRO_MONTHLY_PRICE_ID: str = ""
    STRIPE_LIVE_PRO_ANNUAL_PRICE_ID: str = ""
    STRIPE_LIVE_AGENCY_MONTHLY_PRICE_ID: str = ""
    STRIPE_LIVE_AGENCY_ANNUAL_PRICE_ID: str = ""

    # Legacy single-mode keys (backward compat)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # ── NOWPayments (BTC / SOL) ──────────────────────────────────────────
    NOWPAYMENTS_API_KEY: str = ""
    NOWPAYMENTS_IPN_SECRET: str = ""
    NOWPAYMENTS_BASE_URL: str = "https://api.nowpayments.io/v1"
    NOWPAYMENTS_TIMEOUT_SECONDS: float = 15.0
    CRYPTO_INVOICE_TTL_MINUTES: int = 60

    # ── Stripe Helper Properties ─────────────────────────────────────────
    @property
    def active_stripe_secret_key(self) -> str:
        if self.STRIPE_MODE == "live":
            return self.STRIPE_LIVE_SECRET_KEY or self.STRIPE_SECRET_KEY
        return self.STRIPE_TEST_SECRET_KEY or self.STRIPE_SECRET_KEY

    @property
    def active_stripe_publishable_key(self) -> str:
        if self.STRIPE_MODE == "live":
            return self.STRIPE_LIVE_PUBLISHABLE_KEY or self.STRIPE_PUBLISHABLE_KEY
        return self.STRIPE_TEST_PUBLISHABLE_KEY or self.STRIPE_PUBLISHABLE_KEY

    @property
    def active_stripe_webhook_secret(self) -> str:
        if self.STRIPE_MODE == "live":
            return self.STRIPE_LIVE_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET
        return self.STRIPE_TEST_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET

    @property
    def active_stripe_price_ids(self) -> Dict[Tuple[str, str], str]:
        prefix = "STRIPE_LIVE_" if self.STRIPE_MODE == "live" else "STRIPE_TEST_"
        table = {}
        for plan in ("pro", "agency"):
            for period in ("monthly", "annual"):
                value = getattr(self, f"{prefix}{plan.upper()}_{period.upper()}_PRICE_ID")
                if value:
                    table[(plan, period)] = value
        return table

    def billing_config(self) -> BillingConfig:
        """Resolve the active payment configuration once."""
        return BillingConfig(
            stripe_mode=self.STRIPE_MODE,
            stripe_secret_key=self.active_stripe_secret_key,
            stripe_publishable_key=self.active_stripe_publishable_key,
            stripe_webhook_secret=self.active_stripe_webhook_secret,
            stripe_webhook_tolerance=self.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            stripe_price_ids=self.active_stripe_price_ids,
            nowpayments_api_key=self.NOWPAYMENTS_API_KEY,
            nowpayments_ipn_secret=self.NOWPAYMENTS_IPN_SECRET,
            nowpayments_base_url=self.NOWPAYMENTS_BASE_URL,
            nowpayments_timeout=self.NOWPAYMENTS_TIMEOUT_SECONDS,
            crypto_invoice_ttl_minutes=self.CRYPTO_INVOICE_TTL_MINUTES,
            app_url=self.APP_URL,
            app_name=self.APP_NAME,
        )

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
