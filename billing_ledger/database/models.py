"""SQLAlchemy database models for the billing ledger."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSON_TYPE = JSONB().with_variant(JSON(), "sqlite")
MONEY = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Account(Base):
    """
    One row per end user.

    Billing fields are projected from subscription events; earnings fields
    are only ever changed with atomic increment expressions.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subscription_current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_invoice_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    pro_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    total_affiliate_earnings: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00")
    )
    unpaid_affiliate_earnings: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0.00")
    )
    affiliate_code: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    affiliate_enrolled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stripe_connect_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "last_invoice_status IS NULL OR last_invoice_status IN ('paid', 'failed')",
            name="valid_last_invoice_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Account."""
        return (
            f"<Account(id={self.id}, status={self.subscription_status}, "
            f"pro_access={self.pro_access})>"
        )


class Referral(Base):
    """
    A referred sign-up.

    At most one pending row may exist per referred account; conversion is a
    one-way status-checked update.
    """

    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=False, index=True
    )
    referred_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    commission_amount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'converted')", name="valid_referral_status"),
        Index(
            "uq_referrals_pending_referred",
            "referred_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of Referral."""
        return (
            f"<Referral(id={self.id}, referrer={self.referrer_id}, "
            f"referred={self.referred_id}, status={self.status})>"
        )


class CommissionTransfer(Base):
    """
    One payout attempt to an affiliate.

    Moves pending -> completed | failed only through the payout dispatcher.
    Reversal on refund stamps ``reversed_at`` and never deletes the row.
    """

    __tablename__ = "commission_transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("accounts.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_reversal_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reversal_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_transfer_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_transfer_status",
        ),
        CheckConstraint(
            "status != 'completed' OR stripe_transfer_id IS NOT NULL",
            name="completed_has_transfer_id",
        ),
        CheckConstraint(
            "status != 'failed' OR error IS NOT NULL",
            name="failed_has_error",
        ),
        Index("idx_commission_transfers_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of CommissionTransfer."""
        return (
            f"<CommissionTransfer(id={self.id}, affiliate={self.affiliate_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class ProcessedEvent(Base):
    """
    Stripe event ids seen by the webhook.

    The primary key is the only deduplication mechanism: a row's presence,
    processed or not, short-circuits redelivery.
    """

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON_TYPE, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation of ProcessedEvent."""
        return (
            f"<ProcessedEvent(id={self.event_id}, type={self.event_type}, "
            f"processed={self.processed_at is not None})>"
        )
