"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: Optional[str] = Field(
        default=None, description="Stripe publishable key (pk_test_...)"
    )
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2024-06-20", description="Stripe API version")
    stripe_webhook_tolerance: int = Field(
        default=300, description="Max age of a webhook signature timestamp (seconds)"
    )
    stripe_monthly_price_id: Optional[str] = Field(
        default=None, description="Default subscription price used by checkout"
    )
    app_url: str = Field(
        default="http://localhost:3000", description="Public URL of the web application"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="billing-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="API key header name")
    internal_api_key: Optional[str] = Field(
        default=None, description="Key required on operator and application routes"
    )

    # Affiliate Program
    affiliate_commission_rate: Decimal = Field(
        default=Decimal("0.5"), description="Share of the gross checkout total paid to the referrer"
    )
    payout_currency: str = Field(default="usd", description="Currency of affiliate transfers")
    referral_code_length: int = Field(default=8, description="Length of generated referral codes")
    payout_sweep_interval_seconds: float = Field(
        default=300.0, description="Interval of the background payout sweep"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key is a test or live secret key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("affiliate_commission_rate")
    @classmethod
    def validate_commission_rate(cls, v: Decimal) -> Decimal:
        """Commission is a share of the gross amount."""
        if v <= 0 or v > 1:
            raise ValueError("Commission rate must be in (0, 1]")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
