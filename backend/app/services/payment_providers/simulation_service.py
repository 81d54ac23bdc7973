"""
Simulation gateway for testing payments without real API calls.

This gateway is used in SIMULATION mode for local development and testing.
Intents live in process memory and only change state when an admin (or a
test) drives them with ``simulate_success`` / ``simulate_failure``. Webhook
events it produces are signed exactly like Stripe's, so the webhook endpoint
runs the same verification in every mode.
"""

import json
import logging
import secrets
import time
from copy import deepcopy
from typing import Dict, Any, Optional, Tuple, List

from app.config.payment_config import PAYMENT_CONFIG
from app.core.exceptions import NotFoundError, InvalidInputError
from app.services.payment_providers.stripe_service import (
    build_signature_header,
    parse_event,
    summarize_payment_method,
    verify_signature,
)

logger = logging.getLogger(__name__)


# Intent status -> webhook event type
EVENT_TYPES = {
    "requires_payment_method": "payment_intent.created",
    "succeeded": "payment_intent.succeeded",
    "payment_failed": "payment_intent.payment_failed",
    "canceled": "payment_intent.canceled",
    "requires_action": "payment_intent.requires_action",
}


class SimulationService:
    """In-process payment gateway for SIMULATION mode."""

    name = "simulation"

    def __init__(self, webhook_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret or PAYMENT_CONFIG["webhook_secret"]
        self.webhook_tolerance = PAYMENT_CONFIG["webhook_tolerance_seconds"]
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        """Simulate payment intent creation."""
        intent_id = f"pi_sim_{secrets.token_hex(12)}"
        self.intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount_minor,
            "currency": currency,
            "status": "requires_payment_method",
            "client_secret": f"{intent_id}_secret_{secrets.token_hex(8)}",
            "metadata": dict(metadata),
            "last_payment_error": None,
        }
        logger.info(f"[SIMULATION] Payment intent {intent_id} created for {amount_minor} {currency}")

        return {
            "intent_id": intent_id,
            "client_secret": self.intents[intent_id]["client_secret"],
            "status": "requires_payment_method",
        }

    def _get(self, intent_id: str) -> Dict[str, Any]:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise NotFoundError("Payment intent not found")
        return intent

    async def retrieve_intent(self, intent_id: str) -> Dict[str, Any]:
        intent = self._get(intent_id)
        return {
            "id": intent["id"],
            "status": intent["status"],
            "amount": intent["amount"],
            "currency": intent["currency"],
            "metadata": dict(intent["metadata"]),
        }

    def simulate_success(self, intent_id: str) -> Dict[str, Any]:
        """Mark an intent as paid, as if the shopper completed the payment."""
        intent = self._get(intent_id)
        if intent["status"] in ("succeeded", "canceled"):
            raise InvalidInputError(f"Payment intent is already {intent['status']}")
        intent["status"] = "succeeded"
        logger.info(f"[SIMULATION] Payment intent {intent_id} succeeded")
        return deepcopy(intent)

    def simulate_failure(self, intent_id: str, reason: str = "Card declined") -> Dict[str, Any]:
        """Fail the current payment attempt; the intent goes back to awaiting a payment method."""
        intent = self._get(intent_id)
        if intent["status"] in ("succeeded", "canceled"):
            raise InvalidInputError(f"Payment intent is already {intent['status']}")
        intent["status"] = "requires_payment_method"
        intent["last_payment_error"] = {"message": reason}
        logger.info(f"[SIMULATION] Payment intent {intent_id} failed: {reason}")
        return deepcopy(intent)

    def build_webhook(self, intent_id: str, event_type: Optional[str] = None,
                      timestamp: Optional[int] = None) -> Tuple[bytes, str]:
        """
        Build a signed webhook delivery for an intent.

        Returns:
            ``(raw_body, signature_header)`` ready to post to the webhook endpoint
        """
        intent = self._get(intent_id)
        if event_type is None:
            event_type = EVENT_TYPES.get(intent["status"], "payment_intent.created")
            if intent["last_payment_error"] and intent["status"] == "requires_payment_method":
                event_type = EVENT_TYPES["payment_failed"]

        event = {
            "id": f"evt_sim_{secrets.token_hex(12)}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": deepcopy(intent)},
        }
        payload = json.dumps(event).encode()
        return payload, build_signature_header(payload, self.webhook_secret, timestamp)

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
        customer_id = f"cus_sim_{secrets.token_hex(12)}"
        self.customers[customer_id] = {
            "id": customer_id,
            "email": email,
            "name": name,
            "metadata": {"userId": user_id},
            "payment_methods": [],
        }
        logger.info(f"[SIMULATION] Customer {customer_id} created for user {user_id}")
        return {"customer_id": customer_id}

    def simulate_card(self, customer_id: str, brand: str = "visa", last4: str = "4242") -> Dict[str, Any]:
        """Attach a saved card to a simulated customer."""
        customer = self.customers.get(customer_id)
        if customer is None:
            raise NotFoundError("Gateway resource not found")
        method = {
            "id": f"pm_sim_{secrets.token_hex(12)}",
            "type": "card",
            "card": {"brand": brand, "last4": last4, "exp_month": 12, "exp_year": 2030},
        }
        customer["payment_methods"].append(method)
        return deepcopy(method)

    async def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        customer = self.customers.get(customer_id)
        if customer is None:
            raise NotFoundError("Gateway resource not found")
        return [summarize_payment_method(method) for method in customer["payment_methods"]]
