"""Instamojo payment gateway client (API v1.1).

Endpoints used:
- POST payment-requests/       create a hosted payment request
- GET  payment-requests/{id}/  fetch a payment request with its payments

Webhooks are signed with HMAC-SHA1 over the payload's values, sorted by key
and joined with ``|``, keyed by the account's private salt.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://test.instamojo.com/api/1.1/"
PRODUCTION_BASE_URL = "https://www.instamojo.com/api/1.1/"

SIGNATURE_FIELD = "mac"


@dataclass(frozen=True)
class InstamojoConfig:
    """Credentials and URLs for the gateway client."""

    api_key: str
    auth_token: str
    salt: str
    sandbox: bool = True
    timeout_seconds: float = 30.0
    redirect_base_url: str = "http://localhost:3000"
    webhook_url: str = "http://localhost:4000/api/v1/payments/webhook"

    @property
    def base_url(self) -> str:
        return SANDBOX_BASE_URL if self.sandbox else PRODUCTION_BASE_URL


class PaymentGatewayError(Exception):
    """The gateway rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, unavailable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.unavailable = unavailable


def compute_signature(payload: Mapping[str, Any], salt: str) -> str:
    """Return the hex HMAC-SHA1 of ``payload`` (excluding ``mac``)."""
    items = sorted(
        (str(key), "" if value is None else str(value))
        for key, value in payload.items()
        if key != SIGNATURE_FIELD
    )
    message = "|".join(f"{key}={value}" for key, value in items)
    return hmac.new(salt.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).hexdigest()


def validate_webhook_signature(
    payload: Mapping[str, Any],
    signature: Optional[str],
    salt: str,
) -> bool:
    """Constant-time check of a webhook signature. Missing salt or signature fails."""
    if not salt or not signature:
        return False
    expected = compute_signature(payload, salt)
    return hmac.compare_digest(expected, signature.strip().lower())


class InstamojoClient:
    """Thin async wrapper over the Instamojo REST API."""

    def __init__(self, config: InstamojoConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.config.api_key and self.config.auth_token)

    def _headers(self) -> dict:
        return {
            "X-Api-Key": self.config.api_key,
            "X-Auth-Token": self.config.auth_token,
            "Accept": "application/json",
        }

    def redirect_url(self, payment_id: str) -> str:
        return f"{self.config.redirect_base_url}/payment/callback?paymentId={payment_id}"

    async def create_payment_request(
        self,
        *,
        payment_id: str,
        purpose: str,
        amount: float,
        buyer_name: str,
        email: str,
        phone: Optional[str] = None,
    ) -> dict:
        """Create a hosted payment request and return the ``payment_request`` object."""
        data = {
            "purpose": purpose[:30],
            "amount": f"{amount:.2f}",
            "buyer_name": buyer_name,
            "email": email,
            "redirect_url": self.redirect_url(payment_id),
            "webhook": self.config.webhook_url,
            "send_email": "true",
            "send_sms": "true" if phone else "false",
            "allow_repeated_payments": "false",
        }
        if phone:
            data["phone"] = phone

        logger.info("Instamojo create: payment=%s amount=%s", payment_id, data["amount"])
        body = await self._request("POST", "payment-requests/", data=data)
        return body["payment_request"]

    async def get_payment_request(self, payment_request_id: str) -> dict:
        """Fetch a payment request, including its ``payments`` list."""
        body = await self._request("GET", f"payment-requests/{payment_request_id}/")
        return body["payment_request"]

    async def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        if not self.configured:
            raise PaymentGatewayError("Payment gateway is not configured", unavailable=True)

        url = f"{self.config.base_url}{path}"
        try:
            resp = await self._client.request(method, url, data=data, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.error("Instamojo %s %s timed out", method, path)
            raise PaymentGatewayError("Payment gateway timed out", unavailable=True) from exc
        except httpx.HTTPError as exc:
            logger.error("Instamojo %s %s failed: %s", method, path, exc)
            raise PaymentGatewayError("Payment gateway unreachable", unavailable=True) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 500:
            logger.error("Instamojo %s %s returned %d", method, path, resp.status_code)
            raise PaymentGatewayError(
                "Payment gateway unavailable", status_code=resp.status_code, unavailable=True
            )
        if resp.status_code >= 400 or not body.get("success") or "payment_request" not in body:
            logger.error("Instamojo %s %s rejected (%d): %s", method, path, resp.status_code, resp.text[:300])
            raise PaymentGatewayError(
                f"Payment gateway rejected the request: {body.get('message') or resp.status_code}",
                status_code=resp.status_code,
            )
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
