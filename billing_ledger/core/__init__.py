"""Core billing ledger logic."""
from .account_projection import AccountProjection, SubscriptionUpdateOptions
from .accounts import AccountService, BillingView
from .affiliate_program import AffiliateProgram
from .checkout import CheckoutService
from .commission_engine import CommissionEngine
from .event_store import EventStore
from .payout_dispatcher import PayoutDispatcher, SweepReport
from .webhook_dispatcher import DispatchResult, DispatchStatus, WebhookDispatcher

__all__ = [
    "AccountProjection",
    "AccountService",
    "AffiliateProgram",
    "BillingView",
    "CheckoutService",
    "CommissionEngine",
    "DispatchResult",
    "DispatchStatus",
    "EventStore",
    "PayoutDispatcher",
    "SubscriptionUpdateOptions",
    "SweepReport",
    "WebhookDispatcher",
]
