"""
CryptoScope Backend — Billing Errors
Exception taxonomy shared by the payment adapters, the reconciler and the
billing routes, plus the FastAPI handler that renders them.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    status_code = 400
    code = "billing_error"
    headers: Optional[Dict[str, str]] = None

    def __init__(
        self,
        message: str = "",
        *,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message or self.code.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class BadRequest(BillingError):         status_code = 400; code = "bad_request"
class InvalidSignature(BillingError):   status_code = 401; code = "invalid_signature"
class NotFound(BillingError):           status_code = 404; code = "not_found"
class ServiceUnavailable(BillingError): status_code = 503; code = "service_unavailable"


class Unauthorized(BillingError):
    status_code = 401
    code = "unauthorized"
    headers = {"WWW-Authenticate": "Bearer"}


class SubscriptionConflict(BillingError):
    """The user already holds unexpired access; a new purchase would overlap it."""
    status_code = 409
    code = "subscription_conflict"


class UpstreamProviderError(BillingError):
    status_code = 502
    code = "upstream_provider_error"

    def __init__(self, provider: str, message: str = "", **kwargs):
        super().__init__(message or f"{provider} request failed", **kwargs)
        self.provider = provider
        self.details.setdefault("provider", provider)


async def _billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, _billing_error_handler)
