"""Configuration package for the billing ledger."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
