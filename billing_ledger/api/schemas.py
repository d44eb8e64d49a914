"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class RegisterAccountRequest(BaseModel):
    """Request schema for first sign-in registration."""

    account_id: str = Field(..., min_length=1, max_length=128, description="Auth provider uid")
    email: EmailStr = Field(..., description="Account email")
    display_name: Optional[str] = Field(default=None, max_length=255)
    referral_code: Optional[str] = Field(
        default=None, description="Affiliate code the user signed up with"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "account_id": "u_8f14e45fceea167a",
                    "email": "ada@example.com",
                    "display_name": "Ada",
                    "referral_code": "K7QX2MPD",
                }
            ]
        }
    }


class AccountResponse(BaseModel):
    """Billing and earnings view of an account."""

    model_config = ConfigDict(from_attributes=True)

    account_id: str
    email: str
    pro_access: bool
    subscription_status: Optional[str] = None
    subscription_price_id: Optional[str] = None
    subscription_current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_invoice_status: Optional[str] = None
    last_payment_error: Optional[str] = None
    has_billing_portal: bool = False
    affiliate_code: Optional[str] = None
    payout_destination_set: bool = False
    total_affiliate_earnings: Decimal = Field(..., description="Lifetime commission (major units)")
    unpaid_affiliate_earnings: Decimal = Field(..., description="Commission not yet paid out")


class EnrollResponse(BaseModel):
    """Response schema for affiliate enrollment."""

    account_id: str
    affiliate_code: str
    affiliate_enrolled_at: Optional[datetime] = None


class PayoutDestinationRequest(BaseModel):
    """Request schema for setting a Stripe Connect payout destination."""

    stripe_connect_account_id: str = Field(..., description="Connected account (acct_...)")

    @field_validator("stripe_connect_account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        """Validate Connect account id format."""
        v = v.strip()
        if not v.startswith("acct_"):
            raise ValueError("Must be a Stripe Connect account id (acct_...)")
        return v


class TransferResponse(BaseModel):
    """Commission transfer record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    affiliate_id: str
    amount: Decimal
    currency: str
    status: str
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    error: Optional[str] = None
    reversed_at: Optional[datetime] = None
    stripe_reversal_id: Optional[str] = None
    reversal_error: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class PayoutDestinationResponse(BaseModel):
    """Response schema for payout destination updates."""

    account_id: str
    stripe_connect_account_id: str
    deferred_transfer: Optional[TransferResponse] = None


class RecordReferralRequest(BaseModel):
    """Request schema for recording a referred sign-up."""

    referral_code: str = Field(..., min_length=1, max_length=32)
    referred_account_id: str = Field(..., min_length=1, max_length=128)


class ReferralResponse(BaseModel):
    """Referral record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    referrer_id: str
    referred_id: str
    status: str
    commission_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    converted_at: Optional[datetime] = None


class CheckoutRequest(BaseModel):
    """Request schema for starting a subscription checkout."""

    account_id: str = Field(..., min_length=1, max_length=128)
    price_id: Optional[str] = Field(
        default=None, description="Stripe price (defaults to the monthly plan)"
    )


class PortalRequest(BaseModel):
    """Request schema for opening the billing portal."""

    account_id: str = Field(..., min_length=1, max_length=128)


class SessionUrlResponse(BaseModel):
    """Hosted Stripe page URL."""

    url: str


class SweepResponse(BaseModel):
    """Response schema for a payout sweep."""

    attempted: int
    completed: List[str]
    failed: List[str]
    storage_errors: List[str]


class ReplayResponse(BaseModel):
    """Response schema for an event replay."""

    event_id: str
    event_type: str
    status: str
    sweep: Optional[SweepResponse] = None


class WebhookResponse(BaseModel):
    """Response schema for webhook deliveries."""

    received: bool = True


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
