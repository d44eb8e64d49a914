"""
Affiliate program: enrollment, referral capture and payout configuration.
"""
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.exceptions import AccountNotFound, AffiliateError
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import Account, CommissionTransfer, Referral

logger = structlog.get_logger(__name__)

# No 0/O or 1/I/L: codes are read aloud and typed by hand
REFERRAL_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MAX_CODE_ATTEMPTS = 10
CONNECT_ACCOUNT_PREFIX = "acct_"


def generate_referral_code(length: int = 8) -> str:
    """Random referral code drawn from an unambiguous upper-case alphabet."""
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


class AffiliateProgram:
    """Manages affiliate membership and referrals."""

    def __init__(self, ledger: Ledger, settings: Optional[Settings] = None):
        self.ledger = ledger
        self.settings = settings or get_settings()

    async def _require_account(self, account_id: str) -> Account:
        account = await self.ledger.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def enroll(self, account_id: str) -> Account:
        """
        Enroll an account and assign it a unique referral code.

        Enrolling an already enrolled account returns it unchanged.

        Raises:
            AccountNotFound: If the account does not exist
            AffiliateError: If no free code could be allocated
        """
        account = await self._require_account(account_id)
        if account.affiliate_code:
            return account

        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = generate_referral_code(self.settings.referral_code_length)
            if await self.ledger.get_account_by_affiliate_code(code) is not None:
                logger.debug("referral_code_collision", attempt=attempt)
                continue
            try:
                await self.ledger.update_account(
                    account_id,
                    {
                        "affiliate_code": code,
                        "affiliate_enrolled_at": datetime.now(timezone.utc),
                    },
                )
                await self.ledger.commit()
            except IntegrityError:
                await self.ledger.rollback()
                logger.debug("referral_code_collision", attempt=attempt)
                continue

            logger.info("affiliate_enrolled", account_id=account_id, affiliate_code=code)
            return await self._require_account(account_id)

        raise AffiliateError("Could not allocate a unique referral code")

    async def record_referral(self, code: str, referred_account_id: str) -> Referral:
        """
        Record that ``referred_account_id`` signed up with a referral code.

        Returns the existing pending referral if one is already recorded for
        the referred account.

        Raises:
            AffiliateError: Unknown code or self-referral
            AccountNotFound: If the referred account does not exist
        """
        referrer = await self.ledger.get_account_by_affiliate_code(code.strip().upper())
        if referrer is None:
            raise AffiliateError(f"Unknown referral code {code!r}")

        referred = await self._require_account(referred_account_id)
        if referrer.id == referred.id:
            raise AffiliateError("Accounts cannot refer themselves")

        existing = await self.ledger.get_pending_referral(referred.id)
        if existing is not None:
            return existing

        try:
            referral = await self.ledger.add_referral(referrer.id, referred.id)
            await self.ledger.commit()
        except IntegrityError:
            # Concurrent sign-up request inserted the pending row first
            await self.ledger.rollback()
            existing = await self.ledger.get_pending_referral(referred_account_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "referral_recorded",
            referral_id=str(referral.id),
            referrer_id=referrer.id,
            referred_id=referred.id,
        )
        return referral

    async def set_payout_destination(
        self, account_id: str, destination: str
    ) -> Optional[CommissionTransfer]:
        """
        Set the Stripe Connect account that receives the affiliate's payouts.

        Earnings accrued while no destination was set are queued as one
        deferred transfer: unpaid earnings minus what pending and failed
        transfers already cover.

        Returns:
            Optional[CommissionTransfer]: The deferred transfer, if any

        Raises:
            AccountNotFound: If the account does not exist
            AffiliateError: Not enrolled, or not a Connect account id
        """
        account = await self._require_account(account_id)
        if not account.affiliate_code:
            raise AffiliateError(f"Account {account_id} is not an affiliate")
        if not destination.startswith(CONNECT_ACCOUNT_PREFIX):
            raise AffiliateError(f"Invalid Stripe Connect account id {destination!r}")

        await self.ledger.update_account(account_id, {"stripe_connect_account_id": destination})

        account = await self._require_account(account_id)
        outstanding = await self.ledger.outstanding_transfer_total(account_id)
        backlog = Decimal(account.unpaid_affiliate_earnings) - outstanding

        transfer = None
        if backlog > 0:
            transfer = await self.ledger.add_transfer(
                CommissionTransfer(
                    affiliate_id=account_id,
                    amount=backlog,
                    currency=self.settings.payout_currency,
                    status="pending",
                    created_at=datetime.now(timezone.utc),
                )
            )
        await self.ledger.commit()

        logger.info(
            "payout_destination_set",
            account_id=account_id,
            destination=destination,
            deferred_amount=str(backlog) if transfer else None,
        )
        return transfer

    async def list_transfers(self, account_id: str) -> List[CommissionTransfer]:
        """
        List an affiliate's transfers, newest first.

        Raises:
            AccountNotFound: If the account does not exist
        """
        await self._require_account(account_id)
        return await self.ledger.list_transfers_for_affiliate(account_id)
