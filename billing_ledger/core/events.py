"""
Typed Stripe events.

The webhook feed is modelled as a closed set of event kinds. Anything not
listed maps to ``EventKind.IGNORED``, which the dispatcher acknowledges
without side effects. Event payload objects are parsed into small frozen
snapshots carrying only the fields the ledger reads.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict


class EventKind(str, Enum):
    """Stripe event types the ledger reacts to."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    TRIAL_WILL_END = "customer.subscription.trial_will_end"
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHARGE_REFUNDED = "charge.refunded"
    TRANSFER_FAILED = "transfer.failed"
    IGNORED = "*"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        """Map a Stripe event type string to a kind, defaulting to IGNORED."""
        event_type = _ALIASES.get(event_type, event_type)
        if event_type == cls.IGNORED.value:
            return cls.IGNORED
        try:
            return cls(event_type)
        except ValueError:
            return cls.IGNORED


_ALIASES = {
    "invoice.paid": EventKind.INVOICE_PAID.value,
}


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


PRO_ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


def has_pro_access(status: Optional[str]) -> bool:
    """Pro access is granted exactly for active and trialing subscriptions."""
    return status in PRO_ACCESS_STATUSES


class InvoiceOutcome(str, Enum):
    """Outcome of the most recent invoice; NULL in storage means none."""

    PAID = "paid"
    FAILED = "failed"


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _error_message(obj: Mapping[str, Any]) -> Optional[str]:
    error = obj.get("last_payment_error") or {}
    return error.get("message")


class Snapshot(BaseModel):
    """Base for event object snapshots."""

    model_config = ConfigDict(frozen=True, extra="ignore")


class SubscriptionSnapshot(Snapshot):
    id: str
    customer: str
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "SubscriptionSnapshot":
        """
        Build a snapshot from a Stripe subscription object.

        Newer API versions carry the billing period on the subscription item
        rather than on the subscription itself; both shapes are accepted.
        """
        item = _first_item(obj)
        price = item.get("price") or {}
        period_end = obj.get("current_period_end")
        if period_end is None:
            period_end = item.get("current_period_end")
        return cls(
            id=obj["id"],
            customer=obj["customer"],
            status=obj["status"],
            price_id=price.get("id"),
            current_period_end=_epoch_to_datetime(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
        )


class CustomerSnapshot(Snapshot):
    id: str
    email: Optional[str] = None
    deleted: bool = False

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "CustomerSnapshot":
        return cls(
            id=obj["id"],
            email=obj.get("email"),
            deleted=bool(obj.get("deleted", False)),
        )


class CheckoutSessionSnapshot(Snapshot):
    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    invoice: Optional[str] = None
    subscription: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "CheckoutSessionSnapshot":
        return cls.model_validate(obj)


class InvoiceSnapshot(Snapshot):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_error: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "InvoiceSnapshot":
        subscription = obj.get("subscription")
        if subscription is None:
            details = ((obj.get("parent") or {}).get("subscription_details")) or {}
            subscription = details.get("subscription")
        return cls(
            id=obj["id"],
            customer=obj.get("customer"),
            subscription=subscription,
            payment_error=_error_message(obj),
        )


class PaymentIntentSnapshot(Snapshot):
    id: str
    customer: Optional[str] = None
    payment_error: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "PaymentIntentSnapshot":
        return cls(
            id=obj["id"],
            customer=obj.get("customer"),
            payment_error=_error_message(obj),
        )


class ChargeSnapshot(Snapshot):
    id: str
    payment_intent: Optional[str] = None
    invoice: Optional[str] = None
    amount_refunded: int = 0

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "ChargeSnapshot":
        return cls.model_validate(obj)


class TransferSnapshot(Snapshot):
    id: str

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "TransferSnapshot":
        return cls.model_validate(obj)


class EventData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    object: Dict[str, Any]
    previous_attributes: Optional[Dict[str, Any]] = None


class ProcessorEvent(BaseModel):
    """A verified Stripe event."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData

    @property
    def kind(self) -> EventKind:
        return EventKind.from_type(self.type)

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object

    @property
    def previous_attributes(self) -> Dict[str, Any]:
        return self.data.previous_attributes or {}

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy stored with the processed event row."""
        return self.model_dump(mode="json")
