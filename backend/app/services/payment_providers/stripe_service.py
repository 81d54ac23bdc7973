"""
Stripe Payment Intents API service.

Documentation: https://docs.stripe.com/api/payment_intents
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Dict, Any, Optional, List

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.config.payment_config import PAYMENT_CONFIG, get_gateway_config
from app.core.exceptions import NotFoundError, UpstreamFailureError, WebhookSignatureError

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``"{timestamp}.{payload}"``, hex encoded."""
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a ``Stripe-Signature`` header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={sign_payload(payload, secret, timestamp)}"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int,
    now: Optional[int] = None
) -> None:
    """
    Verify a ``t=...,v1=...`` signature header.

    Raises:
        WebhookSignatureError: if the header is missing or malformed, no
            signature matches, or the timestamp is outside the tolerance
    """
    if not header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None or not timestamp.isdigit() or not signatures:
        raise WebhookSignatureError("Malformed webhook signature header")

    expected = sign_payload(payload, secret, int(timestamp))
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Invalid webhook signature")

    now = int(time.time()) if now is None else now
    if tolerance and abs(now - int(timestamp)) > tolerance:
        raise WebhookSignatureError("Webhook timestamp outside the tolerance zone")


def parse_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise WebhookSignatureError("Webhook payload is not valid JSON")
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise WebhookSignatureError("Webhook payload is not an event")
    return event


def summarize_payment_method(method: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a payment method object to what the storefront shows."""
    card = method.get("card") or {}
    return {
        "id": method["id"],
        "type": method.get("type", "card"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
    }


def gateway_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(PAYMENT_CONFIG["max_retry_attempts"]),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    )


class StripeService:
    """Stripe payment gateway (SANDBOX and PRODUCTION modes)."""

    name = "stripe"

    def __init__(self):
        self.config = get_gateway_config("stripe")
        self.base_url = self.config.get("api_url")
        self.secret_key = self.config.get("secret_key")
        self.api_version = self.config.get("api_version")
        self.timeout = PAYMENT_CONFIG["gateway_timeout_seconds"]
        self.webhook_secret = PAYMENT_CONFIG["webhook_secret"]
        self.webhook_tolerance = PAYMENT_CONFIG["webhook_tolerance_seconds"]

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Stripe-Version": self.api_version,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @gateway_retry()
    def _send(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
              idempotency_key: Optional[str] = None,
              params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = requests.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers(idempotency_key),
            data=data,
            params=params,
            timeout=self.timeout
        )
        if response.status_code == 404:
            raise NotFoundError("Payment intent not found" if path.startswith("/payment_intents") else "Gateway resource not found")
        response.raise_for_status()
        return response.json()

    async def _call(self, method: str, path: str, data: Optional[Dict[str, Any]] = None,
                    idempotency_key: Optional[str] = None,
                    params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a blocking API call in a worker thread under the gateway timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._send, method, path, data, idempotency_key, params),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {method} {path} timed out after {self.timeout}s")
            raise UpstreamFailureError("Payment gateway timed out", status_code=504)
        except requests.HTTPError as e:
            message = str(e)
            try:
                message = e.response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass
            logger.error(f"Stripe {method} {path} failed: {message}")
            raise UpstreamFailureError(f"Payment gateway error: {message}")
        except requests.RequestException as e:
            logger.error(f"Stripe {method} {path} failed: {str(e)}")
            raise UpstreamFailureError("Payment gateway unavailable")

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        """
        Create a payment intent.

        Args:
            amount_minor: Amount in cents
            currency: ISO currency code
            metadata: Flat string map stored on the intent

        Returns:
            ``{intent_id, client_secret, status}``
        """
        data = {
            "amount": amount_minor,
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value

        # Same key on every retry so a timed-out attempt cannot create a second intent
        intent = await self._call("POST", "/payment_intents", data, idempotency_key=secrets.token_hex(16))
        logger.info(f"Stripe payment intent created: {intent['id']}")

        return {
            "intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "status": intent["status"],
        }

    async def retrieve_intent(self, intent_id: str) -> Dict[str, Any]:
        """
        Fetch a payment intent.

        Returns:
            ``{id, status, amount, currency, metadata}`` with amount in cents
        """
        intent = await self._call("GET", f"/payment_intents/{intent_id}")
        return {
            "id": intent["id"],
            "status": intent["status"],
            "amount": intent["amount"],
            "currency": intent["currency"],
            "metadata": intent.get("metadata") or {},
        }

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the parsed event."""
        verify_signature(payload, signature_header, self.webhook_secret, self.webhook_tolerance)
        return parse_event(payload)

    async def create_customer(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a gateway customer tagged with our user id.

        Returns:
            ``{customer_id}``
        """
        data = {"metadata[userId]": user_id}
        if email:
            data["email"] = email
        if name:
            data["name"] = name

        customer = await self._call("POST", "/customers", data, idempotency_key=secrets.token_hex(16))
        logger.info(f"Stripe customer {customer['id']} created for user {user_id}")
        return {"customer_id": customer["id"]}

    async def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        """Saved card payment methods of a customer."""
        result = await self._call(
            "GET", "/payment_methods",
            params={"customer": customer_id, "type": "card"}
        )
        return [summarize_payment_method(method) for method in result.get("data") or []]
