"""
Integration tests for the SQLAlchemy ledger and the event store.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from billing_ledger.core.event_store import EventStore
from billing_ledger.core.events import ProcessorEvent
from billing_ledger.core.exceptions import DuplicateEvent
from billing_ledger.database.ledger import SqlAlchemyLedger

pytestmark = pytest.mark.integration


def _event(event_id: str = "evt_1") -> ProcessorEvent:
    return ProcessorEvent.model_validate(
        {"id": event_id, "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
    )


class TestLedger:
    """Test suite for SqlAlchemyLedger."""

    @pytest.mark.asyncio
    async def test_increment_earnings_is_relative(
        self, ledger: SqlAlchemyLedger, make_account: Any
    ) -> None:
        account = await make_account(total_affiliate_earnings=Decimal("10.00"))

        await ledger.increment_earnings(account.id, total=Decimal("25.00"), unpaid=Decimal("25.00"))
        await ledger.increment_earnings(account.id, unpaid=Decimal("-5.00"))
        await ledger.commit()

        refreshed = await ledger.get_account(account.id)
        assert refreshed.total_affiliate_earnings == Decimal("35.00")
        assert refreshed.unpaid_affiliate_earnings == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_increment_without_deltas_writes_nothing(
        self, ledger: SqlAlchemyLedger, make_account: Any
    ) -> None:
        account = await make_account()
        assert await ledger.increment_earnings(account.id) == 0

    @pytest.mark.asyncio
    async def test_convert_referral_only_once(
        self, ledger: SqlAlchemyLedger, make_account: Any, make_referral: Any
    ) -> None:
        referrer = await make_account()
        referred = await make_account()
        referral = await make_referral(referrer.id, referred.id)
        now = datetime.now(timezone.utc)

        assert await ledger.convert_referral(referral.id, Decimal("25.00"), now) is True
        assert await ledger.convert_referral(referral.id, Decimal("25.00"), now) is False

    @pytest.mark.asyncio
    async def test_one_pending_referral_per_referred_account(
        self, ledger: SqlAlchemyLedger, make_account: Any, make_referral: Any
    ) -> None:
        referrer = await make_account()
        other = await make_account()
        referred = await make_account()
        await make_referral(referrer.id, referred.id)

        with pytest.raises(IntegrityError):
            await ledger.add_referral(other.id, referred.id)

    @pytest.mark.asyncio
    async def test_transition_transfer_checks_status(
        self, ledger: SqlAlchemyLedger, make_account: Any, make_transfer: Any
    ) -> None:
        affiliate = await make_account()
        transfer = await make_transfer(affiliate.id)

        moved = await ledger.transition_transfer(
            transfer.id, "pending", {"status": "completed", "stripe_transfer_id": "tr_1"}
        )
        again = await ledger.transition_transfer(
            transfer.id, "pending", {"status": "completed", "stripe_transfer_id": "tr_2"}
        )
        await ledger.commit()

        assert moved is True
        assert again is False
        assert (await ledger.get_transfer(transfer.id)).stripe_transfer_id == "tr_1"

    @pytest.mark.asyncio
    async def test_pending_transfers_oldest_first(
        self, ledger: SqlAlchemyLedger, make_account: Any, make_transfer: Any
    ) -> None:
        affiliate = await make_account()
        first = await make_transfer(affiliate.id, "1.00")
        second = await make_transfer(affiliate.id, "2.00")
        await make_transfer(affiliate.id, "3.00", status="failed", error="declined")

        pending = await ledger.list_pending_transfers()
        assert [t.id for t in pending] == [first.id, second.id]
        assert await ledger.outstanding_transfer_total(affiliate.id) == Decimal("6.00")

    @pytest.mark.asyncio
    async def test_find_transfer_for_payment(
        self, ledger: SqlAlchemyLedger, make_account: Any, make_transfer: Any
    ) -> None:
        affiliate = await make_account()
        by_intent = await make_transfer(affiliate.id, session_id="cs_1", payment_intent_id="pi_1")
        by_invoice = await make_transfer(affiliate.id, session_id="cs_2", invoice_id="in_2")

        assert (await ledger.find_transfer_for_payment("pi_1", None)).id == by_intent.id
        assert (await ledger.find_transfer_for_payment("pi_other", "in_2")).id == by_invoice.id
        assert await ledger.find_transfer_for_payment(None, None) is None


class TestEventStore:
    """Test suite for EventStore."""

    @pytest.mark.asyncio
    async def test_record_and_mark_processed(self, ledger: SqlAlchemyLedger) -> None:
        store = EventStore(ledger)
        assert await store.seen("evt_1") is False

        await store.record(_event())
        stored = await store.get("evt_1")
        assert stored.event_type == "charge.refunded"
        assert stored.payload["data"]["object"]["id"] == "ch_1"
        assert stored.processed_at is None

        await store.mark_processed("evt_1")
        assert (await store.get("evt_1")).processed_at is not None
        assert await store.seen("evt_1") is True

    @pytest.mark.asyncio
    async def test_second_insert_is_duplicate(self, ledger: SqlAlchemyLedger) -> None:
        store = EventStore(ledger)
        await store.record(_event())

        with pytest.raises(DuplicateEvent) as exc_info:
            await store.record(_event())
        assert exc_info.value.event_id == "evt_1"
