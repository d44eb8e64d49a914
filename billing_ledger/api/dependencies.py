"""
FastAPI dependencies.

Each request gets its own session and Ledger; the Stripe client and the
webhook verifier are process-wide.
"""
import secrets
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from billing_ledger.config import get_settings
from billing_ledger.core.accounts import AccountService
from billing_ledger.core.affiliate_program import AffiliateProgram
from billing_ledger.core.checkout import CheckoutService
from billing_ledger.core.payout_dispatcher import PayoutDispatcher
from billing_ledger.core.webhook_dispatcher import WebhookDispatcher
from billing_ledger.database.connection import get_db
from billing_ledger.database.ledger import SqlAlchemyLedger
from billing_ledger.integrations.stripe_client import StripeClient
from billing_ledger.integrations.webhook_handler import WebhookVerifier

logger = structlog.get_logger(__name__)

api_key_header = APIKeyHeader(name=get_settings().api_key_header, auto_error=False)


async def require_api_key(api_key: Optional[str] = Security(api_key_header)) -> None:
    """Reject requests without the internal API key."""
    expected = get_settings().internal_api_key
    if not expected:
        logger.error("internal_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key authentication is not configured",
        )
    if not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )


async def get_ledger(db: AsyncSession = Depends(get_db)) -> SqlAlchemyLedger:
    return SqlAlchemyLedger(db)


@lru_cache()
def get_stripe_client() -> StripeClient:
    return StripeClient()


@lru_cache()
def get_webhook_verifier() -> WebhookVerifier:
    return WebhookVerifier()


def get_webhook_dispatcher(
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    processor: StripeClient = Depends(get_stripe_client),
    verifier: WebhookVerifier = Depends(get_webhook_verifier),
) -> WebhookDispatcher:
    return WebhookDispatcher(ledger, processor, verifier)


def get_payout_dispatcher(
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    processor: StripeClient = Depends(get_stripe_client),
) -> PayoutDispatcher:
    return PayoutDispatcher(ledger, processor)


def get_affiliate_program(ledger: SqlAlchemyLedger = Depends(get_ledger)) -> AffiliateProgram:
    return AffiliateProgram(ledger)


def get_account_service(ledger: SqlAlchemyLedger = Depends(get_ledger)) -> AccountService:
    return AccountService(ledger)


def get_checkout_service(
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    processor: StripeClient = Depends(get_stripe_client),
) -> CheckoutService:
    return CheckoutService(ledger, processor)
