"""
Webhook dispatcher: the single entry point for Stripe events.

Flow for every delivery:
1. Verify the signature and parse a typed event
2. Deduplicate on the event id (row committed before any side effect)
3. Route by event kind
4. Commit the routed unit of work
5. Sweep pending payouts
6. Mark the event processed
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from billing_ledger.config import Settings, get_settings
from billing_ledger.core.account_projection import AccountProjection
from billing_ledger.core.commission_engine import CommissionEngine
from billing_ledger.core.event_store import EventStore
from billing_ledger.core.events import (
    ChargeSnapshot,
    CheckoutSessionSnapshot,
    EventKind,
    InvoiceOutcome,
    InvoiceSnapshot,
    PaymentIntentSnapshot,
    ProcessorEvent,
    SubscriptionSnapshot,
    TransferSnapshot,
)
from billing_ledger.core.exceptions import (
    AuthenticityError,
    DuplicateEvent,
    EventNotFound,
    EventParseError,
    PersistenceError,
)
from billing_ledger.core.payout_dispatcher import PayoutDispatcher, SweepReport
from billing_ledger.database.ledger import Ledger
from billing_ledger.integrations.stripe_client import StripeClient
from billing_ledger.integrations.webhook_handler import WebhookVerifier
from billing_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[ProcessorEvent], Awaitable[None]]


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    ALREADY_PROCESSED = "already_processed"


@dataclass
class DispatchResult:
    """What happened to one delivery."""

    event_id: str
    event_type: str
    status: DispatchStatus
    sweep: Optional[SweepReport] = None


class WebhookDispatcher:
    """
    Verifies, deduplicates and routes Stripe webhook events.

    Handlers are looked up in a table keyed by ``EventKind``; every kind
    except ``IGNORED`` has exactly one handler.
    """

    def __init__(
        self,
        ledger: Ledger,
        processor: StripeClient,
        verifier: WebhookVerifier,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the dispatcher and its components.

        Args:
            ledger: Storage capabilities for this request
            processor: Stripe client
            verifier: Webhook signature verifier
            settings: Optional settings override
        """
        self.ledger = ledger
        self.verifier = verifier
        self.events = EventStore(ledger)
        self.projection = AccountProjection(ledger, processor)
        self.commissions = CommissionEngine(ledger, processor, settings or get_settings())
        self.payouts = PayoutDispatcher(ledger, processor)

        self.routes: Dict[EventKind, Handler] = {
            EventKind.SUBSCRIPTION_CREATED: self._subscription_created,
            EventKind.SUBSCRIPTION_UPDATED: self._subscription_updated,
            EventKind.SUBSCRIPTION_DELETED: self._subscription_deleted,
            EventKind.TRIAL_WILL_END: self._trial_will_end,
            EventKind.PAYMENT_SUCCEEDED: self._payment_succeeded,
            EventKind.PAYMENT_FAILED: self._payment_failed,
            EventKind.INVOICE_PAID: self._invoice_paid,
            EventKind.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
            EventKind.CHECKOUT_COMPLETED: self._checkout_completed,
            EventKind.CHARGE_REFUNDED: self._charge_refunded,
            EventKind.TRANSFER_FAILED: self._transfer_failed,
        }

    async def handle(self, payload: bytes, signature: Optional[str]) -> DispatchResult:
        """
        Process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            DispatchResult: Processed or duplicate

        Raises:
            AuthenticityError: Signature missing or invalid (nothing written)
            EventParseError: Verified body is not an event (nothing written)
            PersistenceError: Storage failure
        """
        try:
            event = self.verifier.verify(payload, signature)
        except AuthenticityError:
            metrics.record_webhook_rejection("signature")
            raise
        except EventParseError:
            metrics.record_webhook_rejection("parse")
            raise

        start_time = time.time()
        with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
            try:
                if await self.events.seen(event.id):
                    return self._duplicate(event, start_time)
                try:
                    await self.events.record(event)
                except DuplicateEvent:
                    return self._duplicate(event, start_time)

                sweep = await self._process(event)
            except Exception as e:
                await self.ledger.rollback()
                metrics.record_webhook_event(event.type, "failed", time.time() - start_time)
                logger.exception("webhook_event_failed")
                if isinstance(e, SQLAlchemyError):
                    raise PersistenceError(f"Failed to persist event {event.id}") from e
                raise

            metrics.record_webhook_event(event.type, "processed", time.time() - start_time)
            return DispatchResult(event.id, event.type, DispatchStatus.PROCESSED, sweep)

    async def replay(self, event_id: str) -> DispatchResult:
        """
        Re-run routing, sweep and completion for a stored unprocessed event.

        Raises:
            EventNotFound: If the event id was never recorded
        """
        stored = await self.events.get(event_id)
        if stored is None:
            raise EventNotFound(f"Event {event_id} not found")

        if stored.processed_at is not None:
            logger.info("event_replay_skipped", event_id=event_id)
            return DispatchResult(event_id, stored.event_type, DispatchStatus.ALREADY_PROCESSED)

        event = ProcessorEvent.model_validate(stored.payload)
        with structlog.contextvars.bound_contextvars(event_id=event.id, event_type=event.type):
            logger.info("event_replay_started")
            try:
                sweep = await self._process(event)
            except SQLAlchemyError as e:
                await self.ledger.rollback()
                raise PersistenceError(f"Failed to replay event {event_id}") from e
            except Exception:
                await self.ledger.rollback()
                raise

        return DispatchResult(event.id, event.type, DispatchStatus.PROCESSED, sweep)

    def _duplicate(self, event: ProcessorEvent, start_time: float) -> DispatchResult:
        metrics.record_webhook_event(event.type, "duplicate", time.time() - start_time)
        logger.info("webhook_event_duplicate")
        return DispatchResult(event.id, event.type, DispatchStatus.DUPLICATE)

    async def _process(self, event: ProcessorEvent) -> SweepReport:
        await self.route(event)
        await self.ledger.commit()

        sweep = await self.payouts.sweep()

        await self.events.mark_processed(event.id)
        return sweep

    async def route(self, event: ProcessorEvent) -> None:
        """Run the handler for the event's kind; unknown kinds are ignored."""
        handler = self.routes.get(event.kind)
        if handler is None:
            logger.info("webhook_event_ignored")
            return
        logger.info("webhook_event_routed", kind=event.kind.value)
        await handler(event)

    # Subscription lifecycle

    async def _subscription_created(self, event: ProcessorEvent) -> None:
        await self.projection.record_new_subscription(
            SubscriptionSnapshot.from_stripe(event.object)
        )

    async def _subscription_updated(self, event: ProcessorEvent) -> None:
        await self.projection.subscription_updated(
            SubscriptionSnapshot.from_stripe(event.object), event.previous_attributes
        )

    async def _subscription_deleted(self, event: ProcessorEvent) -> None:
        await self.projection.subscription_deleted(SubscriptionSnapshot.from_stripe(event.object))

    async def _trial_will_end(self, event: ProcessorEvent) -> None:
        await self.projection.trial_will_end(SubscriptionSnapshot.from_stripe(event.object))

    # Payment outcomes

    async def _payment_succeeded(self, event: ProcessorEvent) -> None:
        await self.projection.record_payment_outcome(
            PaymentIntentSnapshot.from_stripe(event.object), InvoiceOutcome.PAID
        )

    async def _payment_failed(self, event: ProcessorEvent) -> None:
        await self.projection.record_payment_outcome(
            PaymentIntentSnapshot.from_stripe(event.object), InvoiceOutcome.FAILED
        )

    async def _invoice_paid(self, event: ProcessorEvent) -> None:
        await self.projection.record_invoice_outcome(
            InvoiceSnapshot.from_stripe(event.object), InvoiceOutcome.PAID
        )

    async def _invoice_payment_failed(self, event: ProcessorEvent) -> None:
        await self.projection.record_invoice_outcome(
            InvoiceSnapshot.from_stripe(event.object), InvoiceOutcome.FAILED
        )

    # Money movement

    async def _checkout_completed(self, event: ProcessorEvent) -> None:
        session = CheckoutSessionSnapshot.from_stripe(event.object)
        if session.mode != "subscription":
            logger.info("checkout_mode_ignored", mode=session.mode)
            return
        account = await self.projection.bind_checkout_customer(session)
        await self.commissions.record_commission(session, account)

    async def _charge_refunded(self, event: ProcessorEvent) -> None:
        await self.commissions.reverse_commission(ChargeSnapshot.from_stripe(event.object))

    async def _transfer_failed(self, event: ProcessorEvent) -> None:
        transfer = TransferSnapshot.from_stripe(event.object)
        await self.payouts.handle_processor_failure(transfer.id)
