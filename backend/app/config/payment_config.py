"""
Payment gateway configuration.

Supports three operating modes:
- SIMULATION: In-process gateway for local development (no real API calls)
- SANDBOX: Stripe test-mode keys
- PRODUCTION: Live Stripe keys
"""

import os
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any


# Payment operating mode
PAYMENT_MODE = os.getenv("PAYMENT_MODE", "SIMULATION")  # SIMULATION | SANDBOX | PRODUCTION

# Payment configuration
PAYMENT_CONFIG: Dict[str, Any] = {
    "mode": PAYMENT_MODE,
    
    # Stripe Configuration
    "stripe": {
        "api_url": os.getenv("STRIPE_API_URL", "https://api.stripe.com/v1"),
        "secret_key": os.getenv("STRIPE_SECRET_KEY", ""),
        "api_version": os.getenv("STRIPE_API_VERSION", "2025-08-27.basil"),
    },
    
    # Payment Settings
    "currency": os.getenv("PAYMENT_CURRENCY", "usd"),
    "gateway_timeout_seconds": float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "15")),
    "max_retry_attempts": int(os.getenv("PAYMENT_MAX_RETRIES", "3")),
    
    # A trigger holding the order-creation claim longer than this is presumed dead
    "claim_timeout_seconds": int(os.getenv("PAYMENT_CLAIM_TIMEOUT_SECONDS", "300")),
    
    # Webhook Configuration
    "webhook_secret": os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_change-this-in-production"),
    "webhook_tolerance_seconds": int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300")),
    
    # Gateway metadata limits (Stripe: 50 keys, 500 characters per value)
    "metadata_max_keys": 50,
    "metadata_max_value_length": 500,
}


def get_gateway_config(gateway: str = "stripe") -> Dict[str, Any]:
    """
    Get configuration for a payment gateway.
    
    Args:
        gateway: Gateway name
        
    Returns:
        Gateway configuration dictionary
    """
    return PAYMENT_CONFIG.get(gateway, {})


def to_minor_units(amount: float) -> int:
    """
    Convert a decimal amount to the gateway's minor currency unit (cents).
    
    Args:
        amount: Amount in major units
        
    Returns:
        Integer amount in minor units
    """
    cents = Decimal(str(amount)) * 100
    return int(cents.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    """Convert a minor-unit integer back to a decimal amount."""
    return float(Decimal(amount) / 100)
