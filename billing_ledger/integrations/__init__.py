"""External integrations with the payment processor."""
from .stripe_client import (
    ExternalServiceError,
    ProcessorErrorType,
    ReversalError,
    StripeClient,
)
from .webhook_handler import WebhookVerifier

__all__ = [
    "ExternalServiceError",
    "ProcessorErrorType",
    "ReversalError",
    "StripeClient",
    "WebhookVerifier",
]
