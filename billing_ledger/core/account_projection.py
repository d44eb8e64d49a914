"""
Account projection: subscription and billing state derived from Stripe events.

Every write goes through one UPDATE of the resolved account row. Optional
invoice fields use tri-state updates so "leave alone" and "set to NULL" are
never confused.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from billing_ledger.core.events import (
    CheckoutSessionSnapshot,
    CustomerSnapshot,
    InvoiceOutcome,
    InvoiceSnapshot,
    PaymentIntentSnapshot,
    SubscriptionSnapshot,
    SubscriptionStatus,
    has_pro_access,
)
from billing_ledger.core.exceptions import AccountNotFound
from billing_ledger.core.updates import (
    CLEAR,
    UNCHANGED,
    FieldUpdate,
    SetTo,
    apply_field_update,
)
from billing_ledger.database.ledger import Ledger
from billing_ledger.database.models import Account
from billing_ledger.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)

PAST_DUE_MESSAGE = "Payment past due"
PAYMENT_FAILED_MESSAGE = "Payment failed"


@dataclass(frozen=True)
class SubscriptionUpdateOptions:
    """How a subscription snapshot is projected onto an account."""

    status_changed: bool = False
    previous_status: Optional[str] = None
    force_status: Optional[str] = None
    last_invoice_status: FieldUpdate = UNCHANGED
    last_payment_error: FieldUpdate = UNCHANGED


class AccountProjection:
    """
    Applies subscription lifecycle and payment outcome events to accounts.

    Accounts are resolved by Stripe customer id, falling back to the
    customer's email. An unresolvable customer is logged and skipped: Stripe
    sends events for customers this application never created.
    """

    def __init__(self, ledger: Ledger, processor: StripeClient):
        self.ledger = ledger
        self.processor = processor

    async def resolve_account(self, customer_id: Optional[str]) -> Optional[Account]:
        """
        Find the account for a Stripe customer.

        Args:
            customer_id: Stripe customer ID

        Returns:
            Optional[Account]: The account, or None if it cannot be resolved
        """
        if not customer_id:
            return None

        account = await self.ledger.get_account_by_customer(customer_id)
        if account is not None:
            return account

        customer = CustomerSnapshot.from_stripe(
            await self.processor.retrieve_customer(customer_id)
        )
        if customer.deleted or not customer.email:
            logger.info(
                "customer_unresolvable",
                customer_id=customer_id,
                deleted=customer.deleted,
            )
            return None

        account = await self.ledger.get_account_by_email(customer.email)
        if account is None:
            logger.info("customer_has_no_account", customer_id=customer_id)
        return account

    async def apply_subscription_event(
        self,
        customer_ref: str,
        snapshot: SubscriptionSnapshot,
        options: SubscriptionUpdateOptions = SubscriptionUpdateOptions(),
    ) -> Optional[Account]:
        """
        Project a subscription snapshot onto the customer's account.

        Args:
            customer_ref: Stripe customer ID
            snapshot: Subscription state to mirror
            options: Forced status and tri-state invoice fields

        Returns:
            Optional[Account]: Updated account, or None if unresolved
        """
        account = await self.resolve_account(customer_ref)
        if account is None:
            return None

        status = options.force_status or snapshot.status
        values: Dict[str, Any] = {
            "subscription_status": status,
            "pro_access": has_pro_access(status),
            "stripe_subscription_id": snapshot.id,
            "subscription_price_id": snapshot.price_id,
            "subscription_current_period_end": snapshot.current_period_end,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }
        apply_field_update(values, "last_invoice_status", options.last_invoice_status)
        apply_field_update(values, "last_payment_error", options.last_payment_error)

        await self.ledger.update_account(account.id, values)

        if options.status_changed:
            logger.info(
                "subscription_status_changed",
                account_id=account.id,
                previous_status=options.previous_status,
                status=status,
            )
        logger.info(
            "subscription_projected",
            account_id=account.id,
            subscription_id=snapshot.id,
            status=status,
            pro_access=values["pro_access"],
        )
        return await self.ledger.get_account(account.id)

    async def record_new_subscription(self, snapshot: SubscriptionSnapshot) -> Optional[Account]:
        """Mirror only the identity, status and price of a new subscription."""
        account = await self.resolve_account(snapshot.customer)
        if account is None:
            return None

        await self.ledger.update_account(
            account.id,
            {
                "stripe_subscription_id": snapshot.id,
                "subscription_status": snapshot.status,
                "subscription_price_id": snapshot.price_id,
                "pro_access": has_pro_access(snapshot.status),
            },
        )
        logger.info(
            "subscription_created",
            account_id=account.id,
            subscription_id=snapshot.id,
            status=snapshot.status,
        )
        return await self.ledger.get_account(account.id)

    async def subscription_updated(
        self, snapshot: SubscriptionSnapshot, previous_attributes: Dict[str, Any]
    ) -> Optional[Account]:
        previous_status = previous_attributes.get("status")
        status_changed = bool(previous_status) and previous_status != snapshot.status

        last_payment_error: FieldUpdate = UNCHANGED
        if status_changed and snapshot.status == SubscriptionStatus.PAST_DUE.value:
            last_payment_error = SetTo(PAST_DUE_MESSAGE)

        return await self.apply_subscription_event(
            snapshot.customer,
            snapshot,
            SubscriptionUpdateOptions(
                status_changed=status_changed,
                previous_status=previous_status,
                last_payment_error=last_payment_error,
            ),
        )

    async def subscription_deleted(self, snapshot: SubscriptionSnapshot) -> Optional[Account]:
        return await self.apply_subscription_event(
            snapshot.customer,
            snapshot,
            SubscriptionUpdateOptions(
                status_changed=True,
                previous_status=snapshot.status,
                force_status=SubscriptionStatus.CANCELED.value,
            ),
        )

    async def trial_will_end(self, snapshot: SubscriptionSnapshot) -> Optional[Account]:
        return await self.apply_subscription_event(
            snapshot.customer,
            snapshot,
            SubscriptionUpdateOptions(force_status=SubscriptionStatus.TRIALING.value),
        )

    async def record_payment_outcome(
        self, payment: PaymentIntentSnapshot, outcome: InvoiceOutcome
    ) -> Optional[Account]:
        """
        Record a one-off payment intent result on the paying account.

        Payment intents without a customer are ignored.
        """
        account = await self.resolve_account(payment.customer)
        if account is None:
            return None

        if outcome is InvoiceOutcome.PAID:
            error: FieldUpdate = CLEAR
        else:
            error = SetTo(payment.payment_error or PAYMENT_FAILED_MESSAGE)

        values: Dict[str, Any] = {"last_invoice_status": outcome.value}
        apply_field_update(values, "last_payment_error", error)
        await self.ledger.update_account(account.id, values)

        logger.info(
            "payment_outcome_recorded",
            account_id=account.id,
            payment_intent_id=payment.id,
            outcome=outcome.value,
        )
        return await self.ledger.get_account(account.id)

    async def record_invoice_outcome(
        self, invoice: InvoiceSnapshot, outcome: InvoiceOutcome
    ) -> Optional[Account]:
        """
        Re-fetch the invoice's subscription and project it with the outcome.

        The retrieval uses an idempotency key derived from the invoice id, so
        redeliveries of the same invoice event hit Stripe's cached response.
        Invoices that do not belong to a subscription are ignored.
        """
        if not invoice.subscription or not invoice.customer:
            logger.info("invoice_without_subscription", invoice_id=invoice.id)
            return None

        subscription = SubscriptionSnapshot.from_stripe(
            await self.processor.retrieve_subscription(
                invoice.subscription,
                idempotency_key=f"sub_retrieve_{invoice.id}",
            )
        )

        if outcome is InvoiceOutcome.PAID:
            error: FieldUpdate = CLEAR
        else:
            error = SetTo(invoice.payment_error or PAYMENT_FAILED_MESSAGE)

        return await self.apply_subscription_event(
            invoice.customer,
            subscription,
            SubscriptionUpdateOptions(
                last_invoice_status=SetTo(outcome.value),
                last_payment_error=error,
            ),
        )

    async def bind_checkout_customer(self, session: CheckoutSessionSnapshot) -> Account:
        """
        Bind the checkout's Stripe customer to the account that started it.

        Raises:
            AccountNotFound: If ``client_reference_id`` names no account
        """
        account_id = session.client_reference_id
        account = await self.ledger.get_account(account_id) if account_id else None
        if account is None:
            logger.error(
                "checkout_account_not_found",
                session_id=session.id,
                client_reference_id=account_id,
            )
            raise AccountNotFound(account_id)

        if session.customer:
            await self.ledger.update_account(
                account.id, {"stripe_customer_id": session.customer}
            )
            account = await self.ledger.get_account(account.id)

        logger.info(
            "checkout_customer_bound",
            account_id=account_id,
            customer_id=session.customer,
            session_id=session.id,
        )
        return account
