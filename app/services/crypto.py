"""
CryptoScope Backend — NOWPayments Adapter
BTC & SOL one-time invoices. Crypto has no native recurring billing, so a
user buys 30 or 365 days upfront through a fixed-rate hosted invoice.
"""
import hashlib
import hmac
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import BillingConfig
from app.core.errors import InvalidSignature, UpstreamProviderError
from app.models.crypto_payment import CryptoPayment
from app.services.events import CryptoPaymentUpdated
from app.services.plans import CRYPTO_TICKERS, BillingPeriod, CryptoCurrency, get_plan, price_cents
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

# NOWPayments payment_status -> CryptoPayment.status
NOWPAYMENTS_STATUS_MAP = {
    "waiting": "waiting",
    "partially_paid": "waiting",
    "confirming": "confirming",
    "sending": "confirming",
    "confirmed": "confirmed",
    "finished": "finished",
    "failed": "failed",
    "expired": "expired",
    "refunded": "refunded",
}


def map_status(provider_status: Optional[str]) -> str:
    """Translate a provider status; anything unknown is treated as pending."""
    return NOWPAYMENTS_STATUS_MAP.get((provider_status or "").strip().lower(), "pending")


def _js_number(value: float) -> str:
    """
    Format a number the way JavaScript's Number#toString does.

    NOWPayments signs JSON.stringify output, which writes 0.00004 where
    Python's repr gives 4e-05, and 1 where Python gives 1.0. Both use the
    shortest round-tripping digits, so only the layout has to be redone.
    """
    if value == 0:
        return "0"
    if value < 0:
        return "-" + _js_number(-value)

    _sign, digits, exponent = Decimal(repr(value)).as_tuple()
    digits = list(digits)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    text = "".join(str(d) for d in digits)
    k = len(digits)
    n = exponent + k  # position of the decimal point

    if k <= n <= 21:
        return text + "0" * (n - k)
    if 0 < n <= 21:
        return f"{text[:n]}.{text[n:]}"
    if -6 < n <= 0:
        return "0." + "0" * -n + text
    e = n - 1
    mantissa = text if k == 1 else f"{text[0]}.{text[1:]}"
    return f"{mantissa}e{'+' if e > 0 else '-'}{abs(e)}"


def _sort_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sort_keys(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sort_keys(v) for v in value]
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, dict):
        return "{" + ",".join(f"{_stringify(str(k))}:{_stringify(v)}" for k, v in value.items()) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_stringify(v) for v in value) + "]"
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (int, float)):
        # JSON.parse turns every number into a double
        return _js_number(float(value))
    raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def canonical_json(payload: Any) -> str:
    """Sorted-key, compact JSON with JavaScript number formatting: the exact string NOWPayments signs."""
    return _stringify(_sort_keys(payload))


def sign_ipn(payload: dict, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), canonical_json(payload).encode("utf-8"), hashlib.sha512
    ).hexdigest()


def _as_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class NowPaymentsAdapter:
    """Crypto-rail gateway. Pass `client` to reuse a connection pool (or in tests)."""

    def __init__(self, config: BillingConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        if not config.nowpayments_ipn_secret:
            logger.warning("NOWPayments IPN secret not configured - crypto webhooks will be rejected")

    @asynccontextmanager
    async def _http(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.config.nowpayments_timeout) as client:
            yield client

    def _url(self, path: str) -> str:
        return f"{self.config.nowpayments_base_url.rstrip('/')}{path}"

    @property
    def _headers(self) -> dict:
        return {"x-api-key": self.config.nowpayments_api_key, "Content-Type": "application/json"}

    # ── Invoices ─────────────────────────────────────────────────────────
    async def create_invoice(
        self,
        db: AsyncSession,
        user_id: str,
        plan: str,
        billing_period: str,
        currency: str,
        return_url: str,
        cancel_url: str,
    ) -> dict:
        """
        Create a fixed-rate hosted invoice and record it as a pending payment.

        The pending row is written only after NOWPayments accepted the
        invoice, and before returning, so an IPN that races the caller's next
        read always finds a row to update.
        """
        period = BillingPeriod(billing_period)
        plan_config = get_plan(plan)
        cents = price_cents(plan, period)
        pay_currency = CRYPTO_TICKERS[CryptoCurrency(currency)]
        order_id = f"{user_id}_{plan}_{period.value}_{int(time.time() * 1000)}"
        label = "Annual" if period == BillingPeriod.ANNUAL else "Monthly"

        body = {
            "price_amount": cents / 100,
            "price_currency": "USD",
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": f"{self.config.app_name} {plan_config.name} - {label}",
            "success_url": return_url,
            "cancel_url": cancel_url,
            "ipn_callback_url": self.config.ipn_callback_url,
            "is_fixed_rate": True,  # lock the crypto amount at creation
            "is_fee_paid_by_user": False,
        }

        try:
            async with self._http() as client:
                response = await client.post(self._url("/invoice"), json=body, headers=self._headers)
        except httpx.HTTPError as e:
            logger.error(f"NOWPayments invoice request failed: {e}")
            raise UpstreamProviderError("nowpayments", "Could not reach the crypto payment provider")

        if response.status_code >= 300:
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            logger.error(f"NOWPayments invoice creation failed: {response.status_code} {message}")
            raise UpstreamProviderError(
                "nowpayments",
                f"NOWPayments invoice creation failed: {message or response.reason_phrase}",
            )

        data = response.json()
        invoice_id = _as_str(data.get("id"))
        if not invoice_id:
            logger.error("NOWPayments invoice response carried no id")
            raise UpstreamProviderError("nowpayments", "Invoice response carried no id")

        now = utcnow()
        expires_at = now + timedelta(minutes=self.config.crypto_invoice_ttl_minutes)
        payment = CryptoPayment(
            id=invoice_id,
            user_id=user_id,
            nowpayments_invoice_id=invoice_id,
            order_id=order_id,
            plan=plan,
            billing_period=period.value,
            currency=pay_currency,
            price_usd=cents,
            status="pending",
            invoice_url=data.get("invoice_url"),
            expires_at=expires_at,
            created_at=now,
        )
        db.add(payment)
        await db.flush()
        logger.info(f"Crypto invoice {invoice_id} created for user {user_id} ({plan}/{period.value}, {pay_currency})")

        return {
            "invoice_id": invoice_id,
            "hosted_url": data.get("invoice_url"),
            "price_usd": cents / 100,
            "pay_currency": pay_currency,
            "expires_at": expires_at,
            "status_url": self._url(f"/invoice/{invoice_id}"),
        }

    async def estimate_price(self, amount_usd: float, ticker: str) -> dict:
        """Preview how much crypto a USD amount costs right now."""
        try:
            async with self._http() as client:
                response = await client.get(
                    self._url("/estimate"),
                    params={"amount": amount_usd, "currency_from": "USD", "currency_to": ticker},
                    headers=self._headers,
                )
            if response.status_code >= 300:
                return {"amount": 0, "rate": 0}
            estimated = float(response.json().get("estimated_amount") or 0)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"NOWPayments estimate failed for {ticker}: {e}")
            return {"amount": 0, "rate": 0}

        return {
            "amount": estimated,
            "rate": round(amount_usd / estimated, 2) if estimated else 0,
        }

    # ── IPN ──────────────────────────────────────────────────────────────
    def verify_ipn(self, payload: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 over the sorted-key JSON of the body, compared in constant time."""
        secret = self.config.nowpayments_ipn_secret
        if not secret or not signature:
            return False
        try:
            body = json.loads(payload)
        except ValueError:
            return False
        if not isinstance(body, dict):
            return False
        expected = sign_ipn(body, secret)
        return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))

    def parse_ipn(self, payload: bytes, signature: Optional[str]) -> CryptoPaymentUpdated:
        if not signature:
            raise InvalidSignature("Missing signature")
        if not self.verify_ipn(payload, signature):
            raise InvalidSignature("Invalid signature")

        body = json.loads(payload)
        provider_status = str(body.get("payment_status") or "")
        return CryptoPaymentUpdated(
            payment_id=_as_str(body.get("payment_id")),
            invoice_id=_as_str(body.get("invoice_id")),
            order_id=_as_str(body.get("order_id")),
            status=map_status(provider_status),
            provider_status=provider_status,
            pay_currency=_as_str(body.get("pay_currency")),
            actually_paid=_as_str(body.get("actually_paid")),
        )
