"""
Payout dispatcher: turns pending commission transfers into Stripe transfers.

Each transfer is handled in its own short units of work: read, call Stripe
outside any transaction, then a status-checked transition. The outbound
call carries the idempotency key ``commission_transfer_<id>``, so two sweeps
racing on the same row (webhook and worker) move money once, and only the
sweep that moves the row to completed decrements unpaid earnings. A sweep
whose transfer Stripe accepted after another sweep marked the row failed
completes it from failed instead.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from billing_ledger.core.exceptions import AffiliateError, TransferNotFound
from billing_ledger.core.money import to_minor_units
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import CommissionTransfer
from billing_ledger.integrations.stripe_client import StripeClient
from billing_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MISSING_DESTINATION_ERROR = "Affiliate has no payout destination"
PROCESSOR_FAILURE_ERROR = "Transfer failed at Stripe"


@dataclass
class SweepReport:
    """Outcome of one sweep."""

    attempted: int = 0
    completed: List[uuid.UUID] = field(default_factory=list)
    failed: List[uuid.UUID] = field(default_factory=list)
    storage_errors: List[uuid.UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "completed": [str(i) for i in self.completed],
            "failed": [str(i) for i in self.failed],
            "storage_errors": [str(i) for i in self.storage_errors],
        }


@dataclass(frozen=True)
class PendingPayout:
    """Column values of a pending transfer, detached from the session."""

    id: uuid.UUID
    affiliate_id: str
    amount: Decimal
    currency: str

    @classmethod
    def from_transfer(cls, transfer: CommissionTransfer) -> "PendingPayout":
        return cls(transfer.id, transfer.affiliate_id, transfer.amount, transfer.currency)


class PayoutDispatcher:
    """Executes pending commission transfers."""

    def __init__(self, ledger: Ledger, processor: StripeClient):
        self.ledger = ledger
        self.processor = processor

    async def sweep(self) -> SweepReport:
        """
        Attempt every pending transfer once.

        A failed transfer or a storage error on one entry never stops the
        sweep. Failed transfers are not retried here; see ``requeue``.

        Returns:
            SweepReport: Per-transfer outcomes
        """
        start_time = time.time()
        report = SweepReport()

        # Rollbacks expire ORM instances, so work from detached values
        pending = [
            PendingPayout.from_transfer(t) for t in await self.ledger.list_pending_transfers()
        ]
        await self.ledger.commit()

        for transfer in pending:
            report.attempted += 1
            try:
                completed = await self._dispatch(transfer)
            except SQLAlchemyError as e:
                await self.ledger.rollback()
                logger.error(
                    "payout_storage_error",
                    transfer_id=str(transfer.id),
                    error=str(e),
                )
                metrics.record_payout_transfer("storage_error")
                report.storage_errors.append(transfer.id)
                continue

            if completed:
                report.completed.append(transfer.id)
            else:
                report.failed.append(transfer.id)

        metrics.record_sweep(len(pending), time.time() - start_time)
        if pending:
            logger.info(
                "payout_sweep_completed",
                attempted=report.attempted,
                completed=len(report.completed),
                failed=len(report.failed),
                storage_errors=len(report.storage_errors),
            )
        return report

    async def _dispatch(self, transfer: PendingPayout) -> bool:
        transfer_id = transfer.id
        amount = transfer.amount

        affiliate = await self.ledger.get_account(transfer.affiliate_id)
        destination = affiliate.stripe_connect_account_id if affiliate else None
        await self.ledger.commit()

        if not destination:
            await self._fail(transfer_id, MISSING_DESTINATION_ERROR)
            return False

        try:
            stripe_transfer = await self.processor.create_transfer(
                amount_cents=to_minor_units(amount),
                currency=transfer.currency,
                destination=destination,
                idempotency_key=f"commission_transfer_{transfer_id}",
                metadata={
                    "commission_transfer_id": str(transfer_id),
                    "affiliate_id": transfer.affiliate_id,
                },
            )
        except Exception as e:
            logger.exception(
                "payout_transfer_failed",
                transfer_id=str(transfer_id),
                affiliate_id=transfer.affiliate_id,
            )
            await self._fail(transfer_id, str(e) or type(e).__name__)
            return False

        stripe_transfer_id = stripe_transfer["id"]
        transitioned = await self.ledger.transition_transfer(
            transfer_id,
            "pending",
            {
                "status": "completed",
                "stripe_transfer_id": stripe_transfer_id,
                "error": None,
                "processed_at": datetime.now(timezone.utc),
            },
        )
        if not transitioned:
            return await self._settle_lost_transition(transfer, stripe_transfer_id)

        await self.ledger.increment_earnings(transfer.affiliate_id, unpaid=-amount)
        await self.ledger.commit()

        metrics.record_payout_transfer("completed")
        logger.info(
            "payout_transfer_completed",
            transfer_id=str(transfer_id),
            affiliate_id=transfer.affiliate_id,
            stripe_transfer_id=stripe_transfer_id,
            amount=str(amount),
        )
        return True

    async def _settle_lost_transition(
        self, transfer: PendingPayout, stripe_transfer_id: str
    ) -> bool:
        """
        Reconcile a transfer another sweep moved while Stripe was paying it.

        Stripe accepted the transfer, so money has moved. A row the other
        sweep marked failed (timeout, exhausted retries) is moved on to
        completed here, with the Stripe id recorded and unpaid earnings
        decremented. Completed is reported only if that is the stored status.
        """
        current = await self.ledger.get_transfer(transfer.id)
        if current is None:
            await self.ledger.rollback()
            return False

        if current.status == "failed" and current.stripe_transfer_id is None:
            recovered = await self.ledger.transition_transfer(
                transfer.id,
                "failed",
                {
                    "status": "completed",
                    "stripe_transfer_id": stripe_transfer_id,
                    "error": None,
                    "processed_at": datetime.now(timezone.utc),
                },
            )
            if recovered:
                await self.ledger.increment_earnings(
                    transfer.affiliate_id, unpaid=-transfer.amount
                )
                await self.ledger.commit()
                metrics.record_payout_transfer("recovered")
                logger.warning(
                    "payout_transfer_recovered",
                    transfer_id=str(transfer.id),
                    stripe_transfer_id=stripe_transfer_id,
                    amount=str(transfer.amount),
                )
                return True
            current = await self.ledger.get_transfer(transfer.id)

        status = current.status if current is not None else None
        await self.ledger.commit()
        if status == "completed":
            logger.info("payout_already_settled", transfer_id=str(transfer.id))
            return True

        logger.warning(
            "payout_transition_lost",
            transfer_id=str(transfer.id),
            status=status,
            stripe_transfer_id=stripe_transfer_id,
        )
        return False

    async def _fail(self, transfer_id: uuid.UUID, error: str) -> None:
        await self.ledger.transition_transfer(
            transfer_id,
            "pending",
            {
                "status": "failed",
                "error": error,
                "processed_at": datetime.now(timezone.utc),
            },
        )
        await self.ledger.commit()
        metrics.record_payout_transfer("failed")
        logger.warning("payout_transfer_marked_failed", transfer_id=str(transfer_id), error=error)

    async def requeue(self, transfer_id: uuid.UUID) -> CommissionTransfer:
        """
        Move a failed transfer back to pending for the next sweep.

        Raises:
            TransferNotFound: If the transfer does not exist
            AffiliateError: If the transfer is not failed
        """
        transfer = await self.ledger.get_transfer(transfer_id)
        if transfer is None:
            raise TransferNotFound(f"Transfer {transfer_id} not found")

        requeued = await self.ledger.transition_transfer(
            transfer_id,
            "failed",
            {
                "status": "pending",
                "error": None,
                "stripe_transfer_id": None,
                "processed_at": None,
            },
        )
        if not requeued:
            raise AffiliateError(
                f"Transfer {transfer_id} is {transfer.status}; only failed transfers can be requeued"
            )
        await self.ledger.commit()

        logger.info("payout_transfer_requeued", transfer_id=str(transfer_id))
        return await self.ledger.get_transfer(transfer_id)

    async def handle_processor_failure(
        self, stripe_transfer_id: str
    ) -> Optional[CommissionTransfer]:
        """
        Record that Stripe failed a transfer it had accepted.

        The transfer moves completed->failed and its amount returns to the
        affiliate's unpaid earnings, unless a refund already reversed it.
        """
        transfer = await self.ledger.find_transfer_by_stripe_id(stripe_transfer_id)
        if transfer is None:
            logger.info("processor_failure_unknown_transfer", stripe_transfer_id=stripe_transfer_id)
            return None

        transitioned = await self.ledger.transition_transfer(
            transfer.id,
            "completed",
            {
                "status": "failed",
                "error": PROCESSOR_FAILURE_ERROR,
                "processed_at": datetime.now(timezone.utc),
            },
        )
        if not transitioned:
            logger.info(
                "processor_failure_ignored",
                transfer_id=str(transfer.id),
                status=transfer.status,
            )
            return None

        if transfer.reversed_at is None:
            await self.ledger.increment_earnings(transfer.affiliate_id, unpaid=transfer.amount)
        else:
            logger.warning("processor_failure_after_reversal", transfer_id=str(transfer.id))
        await self.ledger.commit()

        metrics.record_payout_transfer("failed_at_processor")
        logger.warning(
            "payout_transfer_failed_at_processor",
            transfer_id=str(transfer.id),
            stripe_transfer_id=stripe_transfer_id,
            amount=str(transfer.amount),
        )
        return await self.ledger.get_transfer(transfer.id)
