"""
Subscription Billing Ledger

Reconciles the Stripe webhook feed into local account state:
1. Subscription projection (status, pro access, invoice outcome)
2. Affiliate commissions with at-most-once referral conversion
3. Payout transfers to affiliates, swept after every inbound event
4. Refund-driven commission reversals

Every external event is deduplicated by its Stripe event id before any
side effect runs.
"""

__version__ = "1.0.0"
