"""
Ledger - the storage capability set shared by every billing component.

Components never open sessions or reach for a global connection. They get
a Ledger and call its capabilities:

- read accounts, referrals, transfers and stored events
- atomically increment earnings (``SET col = col + :delta``)
- status-checked transitions (``UPDATE ... WHERE status = :expected``)
- insert-if-absent for external event ids
- explicit unit-of-work boundaries (commit / rollback)

Every write is a single UPDATE or INSERT statement so concurrent webhook
deliveries stay correct without application-level locks.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_ledger.database.models import (
    Account,
    CommissionTransfer,
    ProcessedEvent,
    Referral,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")


class Ledger(Protocol):
    """Storage capabilities required by the billing components."""

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...

    # Accounts
    async def get_account(self, account_id: str) -> Optional[Account]:
        ...

    async def get_account_by_customer(self, customer_id: str) -> Optional[Account]:
        ...

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    async def get_account_by_affiliate_code(self, code: str) -> Optional[Account]:
        ...

    async def add_account(self, account: Account) -> Account:
        ...

    async def update_account(self, account_id: str, values: Dict[str, Any]) -> int:
        ...

    async def increment_earnings(
        self, account_id: str, total: Decimal = ZERO, unpaid: Decimal = ZERO
    ) -> int:
        ...

    # Referrals
    async def get_referral(self, referral_id: uuid.UUID) -> Optional[Referral]:
        ...

    async def get_pending_referral(self, referred_id: str) -> Optional[Referral]:
        ...

    async def add_referral(self, referrer_id: str, referred_id: str) -> Referral:
        ...

    async def convert_referral(
        self, referral_id: uuid.UUID, commission_amount: Decimal, converted_at: datetime
    ) -> bool:
        ...

    # Transfers
    async def add_transfer(self, transfer: CommissionTransfer) -> CommissionTransfer:
        ...

    async def get_transfer(self, transfer_id: uuid.UUID) -> Optional[CommissionTransfer]:
        ...

    async def list_pending_transfers(self) -> List[CommissionTransfer]:
        ...

    async def list_transfers_for_affiliate(self, affiliate_id: str) -> List[CommissionTransfer]:
        ...

    async def outstanding_transfer_total(self, affiliate_id: str) -> Decimal:
        ...

    async def find_transfer_for_payment(
        self, payment_intent_id: Optional[str], invoice_id: Optional[str]
    ) -> Optional[CommissionTransfer]:
        ...

    async def find_transfer_by_stripe_id(
        self, stripe_transfer_id: str
    ) -> Optional[CommissionTransfer]:
        ...

    async def transition_transfer(
        self, transfer_id: uuid.UUID, expected_status: str, values: Dict[str, Any]
    ) -> bool:
        ...

    async def mark_transfer_reversed(
        self, transfer_id: uuid.UUID, values: Dict[str, Any]
    ) -> bool:
        ...

    # Events
    async def get_event(self, event_id: str) -> Optional[ProcessedEvent]:
        ...

    async def insert_event_if_absent(
        self, event_id: str, event_type: str, payload: Dict[str, Any]
    ) -> bool:
        ...

    async def mark_event_processed(self, event_id: str, processed_at: datetime) -> int:
        ...


class SqlAlchemyLedger:
    """
    Ledger backed by a SQLAlchemy async session.

    Reads use ``populate_existing`` so callers always see the latest
    committed row state after increment statements, which bypass the ORM
    identity map.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the ledger.

        Args:
            session: Database session owned by the caller
        """
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def _scalar(self, stmt: Any) -> Any:
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------ accounts

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self._scalar(select(Account).where(Account.id == account_id))

    async def get_account_by_customer(self, customer_id: str) -> Optional[Account]:
        return await self._scalar(
            select(Account).where(Account.stripe_customer_id == customer_id)
        )

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        return await self._scalar(select(Account).where(Account.email == email))

    async def get_account_by_affiliate_code(self, code: str) -> Optional[Account]:
        return await self._scalar(select(Account).where(Account.affiliate_code == code))

    async def add_account(self, account: Account) -> Account:
        self.session.add(account)
        await self.session.flush()
        return account

    async def update_account(self, account_id: str, values: Dict[str, Any]) -> int:
        """
        Apply a column update to one account.

        Args:
            account_id: Account identifier
            values: Column values to set

        Returns:
            int: Number of rows updated (0 or 1)
        """
        if not values:
            return 0
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def increment_earnings(
        self, account_id: str, total: Decimal = ZERO, unpaid: Decimal = ZERO
    ) -> int:
        """
        Atomically add deltas to an affiliate's earnings.

        Negative deltas decrement. The arithmetic runs inside the UPDATE
        statement so concurrent commissions for the same affiliate never
        lose an increment.

        Args:
            account_id: Affiliate account identifier
            total: Delta for total_affiliate_earnings
            unpaid: Delta for unpaid_affiliate_earnings

        Returns:
            int: Number of rows updated (0 or 1)
        """
        values: Dict[str, Any] = {}
        if total:
            values["total_affiliate_earnings"] = Account.total_affiliate_earnings + total
        if unpaid:
            values["unpaid_affiliate_earnings"] = Account.unpaid_affiliate_earnings + unpaid
        if not values:
            return 0

        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        logger.info(
            "affiliate_earnings_incremented",
            account_id=account_id,
            total_delta=str(total),
            unpaid_delta=str(unpaid),
        )
        return result.rowcount

    # ----------------------------------------------------------------- referrals

    async def get_referral(self, referral_id: uuid.UUID) -> Optional[Referral]:
        return await self._scalar(select(Referral).where(Referral.id == referral_id))

    async def get_pending_referral(self, referred_id: str) -> Optional[Referral]:
        return await self._scalar(
            select(Referral).where(
                Referral.referred_id == referred_id,
                Referral.status == "pending",
            )
        )

    async def add_referral(self, referrer_id: str, referred_id: str) -> Referral:
        referral = Referral(
            referrer_id=referrer_id,
            referred_id=referred_id,
            status="pending",
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(referral)
        await self.session.flush()
        return referral

    async def convert_referral(
        self, referral_id: uuid.UUID, commission_amount: Decimal, converted_at: datetime
    ) -> bool:
        """
        Move a referral from pending to converted.

        Returns:
            bool: True if this call performed the transition, False if the
                referral was no longer pending
        """
        stmt = (
            update(Referral)
            .where(Referral.id == referral_id, Referral.status == "pending")
            .values(
                status="converted",
                commission_amount=commission_amount,
                converted_at=converted_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # ----------------------------------------------------------------- transfers

    async def add_transfer(self, transfer: CommissionTransfer) -> CommissionTransfer:
        self.session.add(transfer)
        await self.session.flush()
        return transfer

    async def get_transfer(self, transfer_id: uuid.UUID) -> Optional[CommissionTransfer]:
        return await self._scalar(
            select(CommissionTransfer).where(CommissionTransfer.id == transfer_id)
        )

    async def list_pending_transfers(self) -> List[CommissionTransfer]:
        stmt = (
            select(CommissionTransfer)
            .where(CommissionTransfer.status == "pending")
            .order_by(CommissionTransfer.created_at, CommissionTransfer.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_transfers_for_affiliate(self, affiliate_id: str) -> List[CommissionTransfer]:
        stmt = (
            select(CommissionTransfer)
            .where(CommissionTransfer.affiliate_id == affiliate_id)
            .order_by(CommissionTransfer.created_at.desc())
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def outstanding_transfer_total(self, affiliate_id: str) -> Decimal:
        """Sum of transfers still owed: pending, or failed and awaiting requeue."""
        stmt = select(func.coalesce(func.sum(CommissionTransfer.amount), 0)).where(
            CommissionTransfer.affiliate_id == affiliate_id,
            CommissionTransfer.status.in_(("pending", "failed")),
        )
        result = await self.session.execute(stmt)
        return Decimal(str(result.scalar_one()))

    async def find_transfer_for_payment(
        self, payment_intent_id: Optional[str], invoice_id: Optional[str]
    ) -> Optional[CommissionTransfer]:
        """
        Find the commission transfer originating from a payment.

        Matches the originating checkout session, its payment intent or its
        invoice, whichever the refunded charge carries.
        """
        conditions = []
        if payment_intent_id:
            conditions.append(CommissionTransfer.session_id == payment_intent_id)
            conditions.append(CommissionTransfer.payment_intent_id == payment_intent_id)
        if invoice_id:
            conditions.append(CommissionTransfer.invoice_id == invoice_id)
        if not conditions:
            return None

        stmt = (
            select(CommissionTransfer)
            .where(or_(*conditions))
            .order_by(CommissionTransfer.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_transfer_by_stripe_id(
        self, stripe_transfer_id: str
    ) -> Optional[CommissionTransfer]:
        return await self._scalar(
            select(CommissionTransfer).where(
                CommissionTransfer.stripe_transfer_id == stripe_transfer_id
            )
        )

    async def transition_transfer(
        self, transfer_id: uuid.UUID, expected_status: str, values: Dict[str, Any]
    ) -> bool:
        """
        Update a transfer only if it is still in ``expected_status``.

        Returns:
            bool: True if the row was updated
        """
        stmt = (
            update(CommissionTransfer)
            .where(
                CommissionTransfer.id == transfer_id,
                CommissionTransfer.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_transfer_reversed(
        self, transfer_id: uuid.UUID, values: Dict[str, Any]
    ) -> bool:
        """Stamp a completed transfer as reversed, once."""
        stmt = (
            update(CommissionTransfer)
            .where(
                CommissionTransfer.id == transfer_id,
                CommissionTransfer.status == "completed",
                CommissionTransfer.reversed_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # -------------------------------------------------------------------- events

    async def get_event(self, event_id: str) -> Optional[ProcessedEvent]:
        return await self._scalar(
            select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
        )

    async def insert_event_if_absent(
        self, event_id: str, event_type: str, payload: Dict[str, Any]
    ) -> bool:
        """
        Insert an event row unless the id is already present.

        Must be the first write of its unit of work: a lost race rolls the
        session back.

        Returns:
            bool: True if inserted, False if another delivery got there first
        """
        self.session.add(
            ProcessedEvent(event_id=event_id, event_type=event_type, payload=payload)
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info("processed_event_insert_conflict", event_id=event_id)
            return False
        return True

    async def mark_event_processed(self, event_id: str, processed_at: datetime) -> int:
        stmt = (
            update(ProcessedEvent)
            .where(ProcessedEvent.event_id == event_id)
            .values(processed_at=processed_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
