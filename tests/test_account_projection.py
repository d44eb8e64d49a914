"""
Tests for projecting subscription and payment events onto accounts.
"""
from datetime import datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from billing_ledger.core.account_projection import (
    PAST_DUE_MESSAGE,
    PAYMENT_FAILED_MESSAGE,
    AccountProjection,
)
from billing_ledger.core.events import (
    CheckoutSessionSnapshot,
    InvoiceOutcome,
    InvoiceSnapshot,
    PaymentIntentSnapshot,
    SubscriptionSnapshot,
)
from billing_ledger.core.exceptions import AccountNotFound
from billing_ledger.database.ledger import SqlAlchemyLedger

from tests.helpers import subscription_object


@pytest.fixture
def projection(ledger: SqlAlchemyLedger, stripe_mock: AsyncMock) -> AccountProjection:
    return AccountProjection(ledger, stripe_mock)


def _subscription(**fields: Any) -> SubscriptionSnapshot:
    return SubscriptionSnapshot.from_stripe(subscription_object(**fields))


class TestResolveAccount:
    """Test suite for customer to account resolution."""

    @pytest.mark.asyncio
    async def test_by_customer_id(
        self, projection: AccountProjection, stripe_mock: AsyncMock, make_account: Any
    ) -> None:
        account = await make_account(stripe_customer_id="cus_123")

        resolved = await projection.resolve_account("cus_123")

        assert resolved.id == account.id
        stripe_mock.retrieve_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_customer_email(
        self, projection: AccountProjection, stripe_mock: AsyncMock, make_account: Any
    ) -> None:
        """Test that an unbound customer is matched by its Stripe email."""
        account = await make_account(email="ada@example.com")
        stripe_mock.retrieve_customer.return_value = {"id": "cus_999", "email": "ada@example.com"}

        resolved = await projection.resolve_account("cus_999")

        assert resolved.id == account.id
        stripe_mock.retrieve_customer.assert_awaited_once_with("cus_999")

    @pytest.mark.asyncio
    async def test_deleted_customer_is_unresolved(
        self, projection: AccountProjection, stripe_mock: AsyncMock, make_account: Any
    ) -> None:
        await make_account(email="ada@example.com")
        stripe_mock.retrieve_customer.return_value = {
            "id": "cus_999",
            "email": "ada@example.com",
            "deleted": True,
        }

        assert await projection.resolve_account("cus_999") is None

    @pytest.mark.asyncio
    async def test_unknown_customer_is_skipped(self, projection: AccountProjection) -> None:
        """Test that events for customers this app never created are skipped."""
        assert await projection.resolve_account("cus_unknown") is None
        assert await projection.subscription_deleted(_subscription(customer="cus_unknown")) is None


class TestSubscriptionLifecycle:
    """Test suite for subscription events."""

    @pytest.mark.asyncio
    async def test_created_mirrors_identity_status_and_price(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123")

        account = await projection.record_new_subscription(_subscription(status="trialing"))

        assert account.stripe_subscription_id == "sub_123"
        assert account.subscription_status == "trialing"
        assert account.subscription_price_id == "price_monthly_test"
        assert account.pro_access is True
        assert account.subscription_current_period_end is None

    @pytest.mark.asyncio
    async def test_updated_to_past_due_records_error(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        """Test that a transition into past_due revokes access and records why."""
        await make_account(stripe_customer_id="cus_123", pro_access=True)

        account = await projection.subscription_updated(
            _subscription(status="past_due"), {"status": "active"}
        )

        assert account.subscription_status == "past_due"
        assert account.pro_access is False
        assert account.last_payment_error == PAST_DUE_MESSAGE
        assert account.subscription_current_period_end.replace(tzinfo=None) == datetime(
            2025, 1, 1
        )

    @pytest.mark.asyncio
    async def test_update_without_status_change_keeps_error(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(
            stripe_customer_id="cus_123",
            last_invoice_status="failed",
            last_payment_error="Card expired",
        )

        account = await projection.subscription_updated(
            _subscription(cancel_at_period_end=True), {"cancel_at_period_end": False}
        )

        assert account.cancel_at_period_end is True
        assert account.last_invoice_status == "failed"
        assert account.last_payment_error == "Card expired"

    @pytest.mark.asyncio
    async def test_deleted_forces_canceled(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123", pro_access=True)

        account = await projection.subscription_deleted(_subscription(status="active"))

        assert account.subscription_status == "canceled"
        assert account.pro_access is False

    @pytest.mark.asyncio
    async def test_trial_will_end_forces_trialing(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123")

        account = await projection.trial_will_end(_subscription(status="active"))

        assert account.subscription_status == "trialing"
        assert account.pro_access is True

    @pytest.mark.asyncio
    async def test_pro_access_tracks_status_through_lifecycle(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        """
        Test pro access over one subscription's life, event by event.

        After every event the account has pro access exactly when its status
        is active or trialing.
        """
        await make_account(stripe_customer_id="cus_123")

        steps = [
            (
                lambda: projection.record_new_subscription(_subscription(status="trialing")),
                "trialing",
            ),
            (
                lambda: projection.subscription_updated(
                    _subscription(status="past_due"), {"status": "trialing"}
                ),
                "past_due",
            ),
            (
                lambda: projection.subscription_updated(
                    _subscription(status="active"), {"status": "past_due"}
                ),
                "active",
            ),
            (
                lambda: projection.trial_will_end(_subscription(status="active")),
                "trialing",
            ),
            (
                lambda: projection.subscription_deleted(_subscription(status="active")),
                "canceled",
            ),
        ]

        for apply_event, expected_status in steps:
            account = await apply_event()
            assert account.subscription_status == expected_status
            assert account.pro_access is (account.subscription_status in ("active", "trialing"))


class TestPaymentOutcomes:
    """Test suite for invoice and payment intent outcomes."""

    @pytest.mark.asyncio
    async def test_invoice_paid_refetches_subscription(
        self, projection: AccountProjection, stripe_mock: AsyncMock, make_account: Any
    ) -> None:
        """Test that a paid invoice re-reads the subscription and clears the error."""
        await make_account(
            stripe_customer_id="cus_123",
            last_invoice_status="failed",
            last_payment_error="Card declined",
        )
        stripe_mock.retrieve_subscription.return_value = subscription_object(status="active")

        account = await projection.record_invoice_outcome(
            InvoiceSnapshot(id="in_1", customer="cus_123", subscription="sub_123"),
            InvoiceOutcome.PAID,
        )

        stripe_mock.retrieve_subscription.assert_awaited_once_with(
            "sub_123", idempotency_key="sub_retrieve_in_1"
        )
        assert account.last_invoice_status == "paid"
        assert account.last_payment_error is None
        assert account.pro_access is True

    @pytest.mark.asyncio
    async def test_invoice_failed_records_stripe_message(
        self, projection: AccountProjection, stripe_mock: AsyncMock, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123", pro_access=True)
        stripe_mock.retrieve_subscription.return_value = subscription_object(status="past_due")

        account = await projection.record_invoice_outcome(
            InvoiceSnapshot.from_stripe(
                {
                    "id": "in_2",
                    "customer": "cus_123",
                    "subscription": "sub_123",
                    "last_payment_error": {"message": "Your card has insufficient funds."},
                }
            ),
            InvoiceOutcome.FAILED,
        )

        assert account.last_invoice_status == "failed"
        assert account.last_payment_error == "Your card has insufficient funds."
        assert account.pro_access is False

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_ignored(
        self, projection: AccountProjection, stripe_mock: AsyncMock
    ) -> None:
        result = await projection.record_invoice_outcome(
            InvoiceSnapshot(id="in_3", customer="cus_123"), InvoiceOutcome.PAID
        )

        assert result is None
        stripe_mock.retrieve_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_failed_default_message(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123")

        account = await projection.record_payment_outcome(
            PaymentIntentSnapshot(id="pi_1", customer="cus_123"), InvoiceOutcome.FAILED
        )

        assert account.last_invoice_status == "failed"
        assert account.last_payment_error == PAYMENT_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_payment_succeeded_clears_error(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        await make_account(stripe_customer_id="cus_123", last_payment_error="Payment failed")

        account = await projection.record_payment_outcome(
            PaymentIntentSnapshot(id="pi_1", customer="cus_123"), InvoiceOutcome.PAID
        )

        assert account.last_invoice_status == "paid"
        assert account.last_payment_error is None


class TestCheckoutBinding:
    """Test suite for binding the checkout customer to its account."""

    @pytest.mark.asyncio
    async def test_binds_customer_id(
        self, projection: AccountProjection, make_account: Any
    ) -> None:
        account = await make_account()

        bound = await projection.bind_checkout_customer(
            CheckoutSessionSnapshot(id="cs_1", customer="cus_new", client_reference_id=account.id)
        )

        assert bound.stripe_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_unknown_reference_raises(self, projection: AccountProjection) -> None:
        with pytest.raises(AccountNotFound):
            await projection.bind_checkout_customer(
                CheckoutSessionSnapshot(id="cs_1", customer="cus_new", client_reference_id="ghost")
            )
