"""
Exception taxonomy for webhook reconciliation and the affiliate ledger.

Processor API failures live beside the client in
``billing_ledger.integrations.stripe_client`` (ExternalServiceError,
ReversalError).
"""
from typing import Optional


class LedgerError(Exception):
    """Base exception for billing ledger errors."""

    pass


class AuthenticityError(LedgerError):
    """Raised when a webhook signature is missing or does not verify."""

    pass


class EventParseError(LedgerError):
    """Raised when a verified webhook body is not a well-formed event."""

    pass


class DuplicateEvent(LedgerError):
    """
    Raised when an event id has already been recorded.

    Not a failure: at-least-once delivery makes duplicates routine, and the
    dispatcher acknowledges them.
    """

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already recorded")
        self.event_id = event_id


class AccountNotFound(LedgerError):
    """Raised when an account that must exist cannot be resolved."""

    def __init__(self, account_ref: Optional[str], message: Optional[str] = None):
        super().__init__(message or f"Account {account_ref} not found")
        self.account_ref = account_ref


class EventNotFound(LedgerError):
    """Raised when a stored event id is unknown."""

    pass


class TransferNotFound(LedgerError):
    """Raised when a commission transfer id is unknown."""

    pass


class AffiliateError(LedgerError):
    """Raised when an affiliate program operation is not allowed."""

    pass


class PersistenceError(LedgerError):
    """
    Raised when the ledger storage fails.

    Surfaces as a 500 so the processor redelivers the event.
    """

    pass


class AccountConflict(LedgerError):
    """Raised when registering an account whose email belongs to another id."""

    pass


class BillingError(LedgerError):
    """Raised when a billing session cannot be created for an account."""

    pass
