"""
Commission engine: affiliate commissions on checkout, reversals on refund.

Conversion of the referral is the idempotency mechanism. The status-checked
pending->converted UPDATE succeeds for exactly one delivery of a checkout
event; every later delivery sees zero rows updated and stops before touching
earnings.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import structlog

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.events import ChargeSnapshot, CheckoutSessionSnapshot
from billing_ledger.core.money import compute_commission, from_minor_units
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import Account, CommissionTransfer, Referral
from billing_ledger.integrations.stripe_client import ExternalServiceError, StripeClient
from billing_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")


class CommissionEngine:
    """Credits and claws back affiliate commissions."""

    def __init__(
        self,
        ledger: Ledger,
        processor: StripeClient,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the engine.

        Args:
            ledger: Storage capabilities
            processor: Stripe client used for transfer reversals
            settings: Optional settings override (commission rate, currency)
        """
        self.ledger = ledger
        self.processor = processor
        self.settings = settings or get_settings()

    async def record_commission(
        self, session: CheckoutSessionSnapshot, referred_account: Account
    ) -> Optional[Referral]:
        """
        Credit the referrer of ``referred_account`` for a completed checkout.

        Steps:
        1. Load the pending referral (none: no-op)
        2. Compute the commission from the gross checkout total
        3. Convert the referral with a status-checked UPDATE (lost: no-op)
        4. Atomically increment the affiliate's total and unpaid earnings
        5. Queue a pending transfer if the affiliate can be paid out

        Steps 3-5 commit together.

        Args:
            session: Completed checkout session
            referred_account: Account that paid

        Returns:
            Optional[Referral]: The converted referral, or None if nothing
                was credited by this call
        """
        referral = await self.ledger.get_pending_referral(referred_account.id)
        if referral is None:
            logger.debug("no_pending_referral", account_id=referred_account.id)
            return None

        affiliate = await self.ledger.get_account(referral.referrer_id)
        if affiliate is None:
            logger.warning(
                "referrer_account_missing",
                referral_id=str(referral.id),
                referrer_id=referral.referrer_id,
            )
            return None

        amount_total = session.amount_total or 0
        commission = (
            compute_commission(amount_total, self.settings.affiliate_commission_rate)
            if amount_total > 0
            else ZERO
        )

        now = datetime.now(timezone.utc)
        converted = await self.ledger.convert_referral(referral.id, commission, now)
        if not converted:
            logger.info(
                "referral_already_converted",
                referral_id=str(referral.id),
                session_id=session.id,
            )
            return None

        if commission > 0:
            await self.ledger.increment_earnings(
                affiliate.id, total=commission, unpaid=commission
            )

            if affiliate.stripe_connect_account_id:
                transfer = await self.ledger.add_transfer(
                    CommissionTransfer(
                        affiliate_id=affiliate.id,
                        amount=commission,
                        currency=self.settings.payout_currency,
                        status="pending",
                        session_id=session.id,
                        payment_intent_id=session.payment_intent,
                        invoice_id=session.invoice,
                        created_at=now,
                    )
                )
                logger.info(
                    "commission_transfer_queued",
                    transfer_id=str(transfer.id),
                    affiliate_id=affiliate.id,
                    amount=str(commission),
                )
            else:
                logger.info(
                    "commission_payout_deferred",
                    affiliate_id=affiliate.id,
                    amount=str(commission),
                )
        else:
            logger.warning(
                "commission_zero_amount",
                referral_id=str(referral.id),
                session_id=session.id,
                amount_total=session.amount_total,
            )

        await self.ledger.commit()

        metrics.record_commission(float(commission))
        logger.info(
            "commission_recorded",
            referral_id=str(referral.id),
            affiliate_id=affiliate.id,
            referred_id=referred_account.id,
            session_id=session.id,
            commission=str(commission),
        )
        return await self.ledger.get_referral(referral.id)

    async def reverse_commission(self, charge: ChargeSnapshot) -> Optional[CommissionTransfer]:
        """
        Claw back the commission paid for a refunded charge.

        A completed transfer is stamped ``reversed_at`` with a status-checked
        UPDATE before anything else, so a repeated refund event is a no-op.
        The affiliate's total earnings drop by the transfer amount whether
        or not Stripe accepts the reversal; a failed reversal is recorded on
        the transfer.

        Pending and failed transfers are left untouched: their commission is
        still counted in unpaid earnings. This gap is logged and counted.

        Args:
            charge: Refunded charge

        Returns:
            Optional[CommissionTransfer]: The reversed transfer, or None
        """
        transfer = await self.ledger.find_transfer_for_payment(
            charge.payment_intent, charge.invoice
        )
        if transfer is None:
            logger.info(
                "refund_without_commission",
                charge_id=charge.id,
                payment_intent_id=charge.payment_intent,
            )
            return None

        if transfer.status != "completed":
            logger.warning(
                "refund_commission_gap",
                charge_id=charge.id,
                transfer_id=str(transfer.id),
                transfer_status=transfer.status,
                amount=str(transfer.amount),
                refunded=str(from_minor_units(charge.amount_refunded)),
            )
            metrics.record_refund_gap(transfer.status)
            return None

        claimed = await self.ledger.mark_transfer_reversed(
            transfer.id, {"reversed_at": datetime.now(timezone.utc)}
        )
        if not claimed:
            logger.info(
                "commission_already_reversed",
                charge_id=charge.id,
                transfer_id=str(transfer.id),
            )
            return None

        await self.ledger.increment_earnings(transfer.affiliate_id, total=-transfer.amount)
        await self.ledger.commit()

        try:
            reversal = await self.processor.reverse_transfer(
                transfer.stripe_transfer_id,
                idempotency_key=f"commission_reversal_{transfer.id}",
            )
        except ExternalServiceError as e:
            logger.error(
                "commission_reversal_failed",
                transfer_id=str(transfer.id),
                stripe_transfer_id=transfer.stripe_transfer_id,
                error=str(e),
            )
            await self.ledger.transition_transfer(
                transfer.id, "completed", {"reversal_error": str(e)}
            )
            metrics.record_commission_reversal("reversal_failed")
        else:
            await self.ledger.transition_transfer(
                transfer.id, "completed", {"stripe_reversal_id": reversal.get("id")}
            )
            metrics.record_commission_reversal("reversed")
            logger.info(
                "commission_reversed",
                transfer_id=str(transfer.id),
                stripe_reversal_id=reversal.get("id"),
                amount=str(transfer.amount),
                refunded=str(from_minor_units(charge.amount_refunded)),
            )

        await self.ledger.commit()
        return await self.ledger.get_transfer(transfer.id)
