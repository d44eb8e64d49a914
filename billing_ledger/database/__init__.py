"""Database package for the billing ledger."""
from .connection import get_db, init_db
from .ledger import Ledger, SqlAlchemyLedger
from .models import (
    Account,
    Base,
    CommissionTransfer,
    ProcessedEvent,
    Referral,
)

__all__ = [
    "Account",
    "Base",
    "CommissionTransfer",
    "Ledger",
    "ProcessedEvent",
    "Referral",
    "SqlAlchemyLedger",
    "get_db",
    "init_db",
]
