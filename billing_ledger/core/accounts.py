"""Account registration and the billing/earnings view."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError

from billing_ledger.core.exceptions import AccountConflict, AccountNotFound
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import Account

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BillingView:
    """What an account sees on its billing settings page."""

    account_id: str
    email: str
    pro_access: bool
    subscription_status: Optional[str]
    subscription_price_id: Optional[str]
    subscription_current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    last_invoice_status: Optional[str]
    last_payment_error: Optional[str]
    has_billing_portal: bool
    affiliate_code: Optional[str]
    payout_destination_set: bool
    total_affiliate_earnings: Decimal
    unpaid_affiliate_earnings: Decimal

    @classmethod
    def from_account(cls, account: Account) -> "BillingView":
        return cls(
            account_id=account.id,
            email=account.email,
            pro_access=account.pro_access,
            subscription_status=account.subscription_status,
            subscription_price_id=account.subscription_price_id,
            subscription_current_period_end=account.subscription_current_period_end,
            cancel_at_period_end=account.cancel_at_period_end,
            last_invoice_status=account.last_invoice_status,
            last_payment_error=account.last_payment_error,
            has_billing_portal=account.stripe_customer_id is not None,
            affiliate_code=account.affiliate_code,
            payout_destination_set=account.stripe_connect_account_id is not None,
            total_affiliate_earnings=account.total_affiliate_earnings,
            unpaid_affiliate_earnings=account.unpaid_affiliate_earnings,
        )


class AccountService:
    """Creates accounts on first sign-in and reports their billing state."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    async def register(
        self, account_id: str, email: str, display_name: Optional[str] = None
    ) -> Account:
        """
        Create the account for an authenticated user, once.

        Registering an existing id returns the stored account unchanged.

        Raises:
            AccountConflict: If the email already belongs to another account
        """
        existing = await self.ledger.get_account(account_id)
        if existing is not None:
            return existing

        email = email.strip().lower()
        owner = await self.ledger.get_account_by_email(email)
        if owner is not None:
            raise AccountConflict(f"Email {email} is registered to another account")

        try:
            account = await self.ledger.add_account(
                Account(id=account_id, email=email, display_name=display_name)
            )
            await self.ledger.commit()
        except IntegrityError:
            await self.ledger.rollback()
            existing = await self.ledger.get_account(account_id)
            if existing is None:
                raise AccountConflict(f"Email {email} is registered to another account")
            return existing

        logger.info("account_registered", account_id=account_id)
        return account

    async def billing_view(self, account_id: str) -> BillingView:
        """
        Raises:
            AccountNotFound: If the account does not exist
        """
        account = await self.ledger.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return BillingView.from_account(account)
