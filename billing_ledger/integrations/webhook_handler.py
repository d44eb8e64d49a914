"""
Stripe webhook signature verification.

Implements:
- ``t=...,v1=...`` HMAC-SHA256 signature check with timestamp tolerance
- Typed parsing of the verified body into a ProcessorEvent

The body is only decoded as JSON after the signature verifies.
"""
import json
from typing import Optional

import stripe
import structlog
from pydantic import ValidationError

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.events import ProcessorEvent
from billing_ledger.core.exceptions import AuthenticityError, EventParseError

logger = structlog.get_logger(__name__)


class WebhookVerifier:
    """Verifies Stripe-Signature headers against the shared webhook secret."""

    def __init__(
        self,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the verifier.

        Args:
            secret: Webhook signing secret (uses config if not provided)
            tolerance: Max signature age in seconds (uses config if not provided)
            settings: Optional settings override
        """
        settings = settings or get_settings()
        self.secret = secret or settings.stripe_webhook_secret
        self.tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance

    def verify(self, payload: bytes, signature: Optional[str]) -> ProcessorEvent:
        """
        Verify webhook signature and parse the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            ProcessorEvent: Verified, typed event

        Raises:
            AuthenticityError: If the header is missing or does not verify
            EventParseError: If the verified body is not a Stripe event
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise AuthenticityError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticityError("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise AuthenticityError(f"Invalid webhook signature: {e}") from e

        try:
            event = ProcessorEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            logger.warning("webhook_event_parse_failed", error=str(e))
            raise EventParseError(f"Malformed webhook event: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event
