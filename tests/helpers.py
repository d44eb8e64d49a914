"""Shared test helpers: webhook signing and Stripe object builders."""
import hashlib
import hmac
import os
import time
from typing import Any, Dict, Optional

WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
API_KEY = os.environ.get("INTERNAL_API_KEY", "test-internal-key")


def sign_payload(
    payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None
) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def subscription_object(
    subscription_id: str = "sub_123",
    customer: str = "cus_123",
    status: str = "active",
    price_id: str = "price_monthly_test",
    current_period_end: int = 1735689600,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    """Minimal Stripe subscription object."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": current_period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"object": "list", "data": [{"price": {"id": price_id}}]},
    }
