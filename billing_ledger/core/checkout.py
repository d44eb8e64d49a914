"""Subscription checkout and billing portal sessions."""
from typing import Optional

import structlog

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.events import CustomerSnapshot
from billing_ledger.core.exceptions import AccountNotFound, BillingError
from billing_ledger.database.ledger import Ledger
from billing_ledger.integrations.stripe_client import (
    ExternalServiceError,
    ProcessorErrorType,
    StripeClient,
)

logger = structlog.get_logger(__name__)


class CheckoutService:
    """
    Starts Stripe-hosted billing flows for an account.

    The checkout session carries the account id as ``client_reference_id``;
    ``checkout.session.completed`` uses it to bind the Stripe customer.
    """

    def __init__(
        self,
        ledger: Ledger,
        processor: StripeClient,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.processor = processor
        self.settings = settings or get_settings()

    async def create_checkout_session(
        self, account_id: str, price_id: Optional[str] = None
    ) -> str:
        """
        Create a subscription checkout session.

        Args:
            account_id: Account starting the checkout
            price_id: Stripe price (defaults to the configured monthly price)

        Returns:
            str: Hosted checkout URL

        Raises:
            AccountNotFound: If the account does not exist
            BillingError: If no price is given or configured
            ExternalServiceError: If Stripe fails
        """
        account = await self.ledger.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)

        price_id = price_id or self.settings.stripe_monthly_price_id
        if not price_id:
            raise BillingError("No subscription price configured")

        app_url = self.settings.app_url.rstrip("/")
        session = await self.processor.create_checkout_session(
            price_id=price_id,
            customer_email=account.email,
            client_reference_id=account.id,
            success_url=f"{app_url}/payment?success=true",
            cancel_url=f"{app_url}/payment?canceled=true",
        )
        url = session.get("url")
        if not url:
            raise ExternalServiceError(
                "Failed to create checkout session URL", ProcessorErrorType.PERMANENT
            )

        logger.info(
            "checkout_session_created",
            account_id=account_id,
            session_id=session.get("id"),
            price_id=price_id,
        )
        return url

    async def create_portal_session(self, account_id: str) -> str:
        """
        Create a billing portal session for the account's Stripe customer.

        Returns:
            str: Hosted portal URL

        Raises:
            AccountNotFound: If the account does not exist
            BillingError: No bound customer, or the customer was deleted
            ExternalServiceError: If Stripe fails
        """
        account = await self.ledger.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        if not account.stripe_customer_id:
            raise BillingError("No Stripe customer found")

        try:
            customer = CustomerSnapshot.from_stripe(
                await self.processor.retrieve_customer(account.stripe_customer_id)
            )
        except ExternalServiceError as e:
            if e.error_type is ProcessorErrorType.PERMANENT:
                raise BillingError("Invalid Stripe customer ID") from e
            raise
        if customer.deleted:
            raise BillingError("Stripe customer has been deleted")

        session = await self.processor.create_portal_session(
            customer_id=account.stripe_customer_id,
            return_url=f"{self.settings.app_url.rstrip('/')}/settings?portal_return=true",
        )
        logger.info("portal_session_created", account_id=account_id)
        return session["url"]
