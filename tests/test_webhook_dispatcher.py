"""
Tests for webhook verification, deduplication, routing and replay.
"""
from decimal import Decimal
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from billing_ledger.core.events import EventKind
from billing_ledger.core.exceptions import (
    AccountNotFound,
    AuthenticityError,
    EventNotFound,
    EventParseError,
)
from billing_ledger.core.webhook_dispatcher import DispatchStatus, WebhookDispatcher
from billing_ledger.database.ledger import SqlAlchemyLedger

from tests.helpers import sign_payload


def _checkout_object(account_id: str, **fields: Any) -> Dict[str, Any]:
    obj = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "customer": "cus_123",
        "client_reference_id": account_id,
        "amount_total": 5000,
        "currency": "usd",
        "payment_intent": "pi_123",
        "subscription": "sub_123",
    }
    obj.update(fields)
    return obj


@pytest.fixture
def referred_checkout(make_account: Any, make_referral: Any, make_event: Any) -> Any:
    """Affiliate, referred account and a checkout.session.completed event."""

    async def _make() -> Any:
        affiliate = await make_account(
            affiliate_code="AFFCODE2", stripe_connect_account_id="acct_affiliate"
        )
        referred = await make_account()
        await make_referral(affiliate.id, referred.id)
        event = make_event("checkout.session.completed", _checkout_object(referred.id))
        return affiliate, referred, event

    return _make


class TestRouting:
    """Test suite for the event route table."""

    @pytest.mark.unit
    def test_every_kind_has_one_handler(self, dispatcher: WebhookDispatcher) -> None:
        """Test that every kind except IGNORED is routed."""
        expected = {kind for kind in EventKind if kind is not EventKind.IGNORED}
        assert set(dispatcher.routes) == expected

    @pytest.mark.asyncio
    async def test_unknown_event_is_acknowledged(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        make_event: Any,
        signed: Any,
    ) -> None:
        """Test that an unhandled event type is recorded and processed without effects."""
        event = make_event("customer.created", {"id": "cus_123", "object": "customer"})

        result = await dispatcher.handle(*signed(event))

        assert result.status is DispatchStatus.PROCESSED
        stored = await ledger.get_event(event["id"])
        assert stored.processed_at is not None

    @pytest.mark.asyncio
    async def test_subscription_update_is_projected(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        make_account: Any,
        make_event: Any,
        signed: Any,
        subscription: Any,
    ) -> None:
        account = await make_account(stripe_customer_id="cus_123", pro_access=True)
        event = make_event(
            "customer.subscription.updated",
            subscription(status="past_due"),
            previous_attributes={"status": "active"},
        )

        await dispatcher.handle(*signed(event))

        stored = await ledger.get_account(account.id)
        assert stored.subscription_status == "past_due"
        assert stored.pro_access is False

    @pytest.mark.asyncio
    async def test_one_time_checkout_is_ignored(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        make_account: Any,
        make_event: Any,
        signed: Any,
    ) -> None:
        account = await make_account()
        event = make_event(
            "checkout.session.completed", _checkout_object(account.id, mode="payment")
        )

        result = await dispatcher.handle(*signed(event))

        assert result.status is DispatchStatus.PROCESSED
        assert (await ledger.get_account(account.id)).stripe_customer_id is None


class TestCheckoutFlow:
    """Test suite for checkout events end to end."""

    @pytest.mark.asyncio
    async def test_checkout_credits_and_pays_out(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        stripe_mock: AsyncMock,
        referred_checkout: Any,
        signed: Any,
    ) -> None:
        """Test that a referred checkout is credited and paid in the same delivery."""
        affiliate, referred, event = await referred_checkout()
        stripe_mock.create_transfer.return_value = {"id": "tr_123"}

        result = await dispatcher.handle(*signed(event))

        assert result.status is DispatchStatus.PROCESSED
        assert len(result.sweep.completed) == 1

        stored = await ledger.get_account(affiliate.id)
        assert stored.total_affiliate_earnings == Decimal("25.00")
        assert stored.unpaid_affiliate_earnings == Decimal("0")
        assert (await ledger.get_account(referred.id)).stripe_customer_id == "cus_123"
        assert (await ledger.get_event(event["id"])).processed_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_changes_nothing(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        stripe_mock: AsyncMock,
        referred_checkout: Any,
        signed: Any,
    ) -> None:
        """Test that delivering the same event three times credits and pays once."""
        affiliate, _, event = await referred_checkout()
        stripe_mock.create_transfer.return_value = {"id": "tr_123"}
        payload, header = signed(event)

        statuses = [(await dispatcher.handle(payload, header)).status for _ in range(3)]

        assert statuses == [
            DispatchStatus.PROCESSED,
            DispatchStatus.DUPLICATE,
            DispatchStatus.DUPLICATE,
        ]
        assert stripe_mock.create_transfer.await_count == 1
        stored = await ledger.get_account(affiliate.id)
        assert stored.total_affiliate_earnings == Decimal("25.00")
        assert len(await ledger.list_transfers_for_affiliate(affiliate.id)) == 1


class TestVerification:
    """Test suite for rejected deliveries."""

    @pytest.mark.asyncio
    async def test_bad_signature_writes_nothing(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        referred_checkout: Any,
        signed: Any,
    ) -> None:
        affiliate, _, event = await referred_checkout()
        payload, _ = signed(event)

        with pytest.raises(AuthenticityError):
            await dispatcher.handle(payload, sign_payload(payload, secret="whsec_wrong"))

        assert await ledger.get_event(event["id"]) is None
        assert (await ledger.get_account(affiliate.id)).total_affiliate_earnings == Decimal("0")

    @pytest.mark.asyncio
    async def test_missing_signature(
        self, dispatcher: WebhookDispatcher, make_event: Any, signed: Any
    ) -> None:
        payload, _ = signed(make_event("charge.refunded", {"id": "ch_1"}))

        with pytest.raises(AuthenticityError):
            await dispatcher.handle(payload, None)

    @pytest.mark.asyncio
    async def test_signed_garbage_is_a_parse_error(self, dispatcher: WebhookDispatcher) -> None:
        payload = b'{"not": "an event"}'

        with pytest.raises(EventParseError):
            await dispatcher.handle(payload, sign_payload(payload))


class TestReplay:
    """Test suite for replaying stored events."""

    @pytest.mark.asyncio
    async def test_failed_event_is_replayed(
        self,
        dispatcher: WebhookDispatcher,
        ledger: SqlAlchemyLedger,
        stripe_mock: AsyncMock,
        make_account: Any,
        make_event: Any,
        signed: Any,
    ) -> None:
        """Test that an event whose handler failed can be completed by replay."""
        event = make_event("checkout.session.completed", _checkout_object("user_late"))

        with pytest.raises(AccountNotFound):
            await dispatcher.handle(*signed(event))

        stored = await ledger.get_event(event["id"])
        assert stored is not None
        assert stored.processed_at is None

        # Redelivery is acknowledged without reprocessing
        redelivered = await dispatcher.handle(*signed(event))
        assert redelivered.status is DispatchStatus.DUPLICATE

        await make_account("user_late")
        result = await dispatcher.replay(event["id"])

        assert result.status is DispatchStatus.PROCESSED
        assert (await ledger.get_account("user_late")).stripe_customer_id == "cus_123"
        assert (await ledger.get_event(event["id"])).processed_at is not None

        again = await dispatcher.replay(event["id"])
        assert again.status is DispatchStatus.ALREADY_PROCESSED

    @pytest.mark.asyncio
    async def test_replay_unknown_event(self, dispatcher: WebhookDispatcher) -> None:
        with pytest.raises(EventNotFound):
            await dispatcher.replay("evt_missing")
