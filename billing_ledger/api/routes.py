"""
API routes for the billing ledger.

Domain exceptions raised by the application and operator routes are mapped
to status codes by the handlers in ``billing_ledger.api.main``. The webhook
route answers Stripe itself, with the response bodies Stripe expects.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing_ledger.core.accounts import AccountService, BillingView
from billing_ledger.core.affiliate_program import AffiliateProgram
from billing_ledger.core.checkout import CheckoutService
from billing_ledger.core.exceptions import (
    AffiliateError,
    AuthenticityError,
    EventParseError,
)
from billing_ledger.core.payout_dispatcher import PayoutDispatcher
from billing_ledger.core.webhook_dispatcher import WebhookDispatcher
from billing_ledger.monitoring.health import HealthCheck

from .dependencies import (
    get_account_service,
    get_affiliate_program,
    get_checkout_service,
    get_payout_dispatcher,
    get_webhook_dispatcher,
    require_api_key,
)
from .schemas import (
    AccountResponse,
    CheckoutRequest,
    EnrollResponse,
    HealthCheckResponse,
    PayoutDestinationRequest,
    PayoutDestinationResponse,
    PortalRequest,
    RecordReferralRequest,
    ReferralResponse,
    RegisterAccountRequest,
    ReplayResponse,
    SessionUrlResponse,
    SweepResponse,
    TransferResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
account_router = APIRouter(
    prefix="/accounts", tags=["accounts"], dependencies=[Depends(require_api_key)]
)
affiliate_router = APIRouter(
    prefix="/affiliates", tags=["affiliates"], dependencies=[Depends(require_api_key)]
)
billing_router = APIRouter(
    prefix="/billing", tags=["billing"], dependencies=[Depends(require_api_key)]
)
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_api_key)])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


def _account_response(view: BillingView) -> AccountResponse:
    return AccountResponse.model_validate(view, from_attributes=True)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify, deduplicate and apply a Stripe event",
    responses={400: {"description": "Invalid signature or event"}, 500: {"description": "Retry"}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> Any:
    """
    Handle Stripe webhook events.

    200 acknowledges processed and duplicate events. 400 tells Stripe the
    delivery can never succeed; 500 asks for redelivery.
    """
    body = await request.body()

    try:
        result = await dispatcher.handle(body, stripe_signature)
    except (AuthenticityError, EventParseError) as e:
        logger.warning("api_webhook_rejected", error=str(e))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(e)})
    except Exception as e:
        logger.error("api_webhook_error", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook handler failed"},
        )

    logger.info("api_webhook_handled", event_id=result.event_id, status=result.status.value)
    return {"received": True}


@account_router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an account",
    description="Create the account on first sign-in; repeat calls return it unchanged",
)
async def register_account(
    request: RegisterAccountRequest,
    accounts: AccountService = Depends(get_account_service),
    affiliates: AffiliateProgram = Depends(get_affiliate_program),
) -> AccountResponse:
    account = await accounts.register(request.account_id, request.email, request.display_name)

    if request.referral_code:
        try:
            await affiliates.record_referral(request.referral_code, account.id)
        except AffiliateError as e:
            # A bad referral code must not block sign-up
            logger.warning("api_register_referral_ignored", account_id=account.id, error=str(e))

    return _account_response(await accounts.billing_view(account.id))


@account_router.get(
    "/{account_id}",
    response_model=AccountResponse,
    summary="Get billing view",
    description="Subscription state and affiliate earnings of an account",
)
async def get_account(
    account_id: str,
    accounts: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return _account_response(await accounts.billing_view(account_id))


@affiliate_router.post(
    "/referrals",
    response_model=ReferralResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a referral",
)
async def record_referral(
    request: RecordReferralRequest,
    affiliates: AffiliateProgram = Depends(get_affiliate_program),
) -> ReferralResponse:
    referral = await affiliates.record_referral(
        request.referral_code, request.referred_account_id
    )
    return ReferralResponse.model_validate(referral)


@affiliate_router.post(
    "/{account_id}/enroll",
    response_model=EnrollResponse,
    summary="Join the affiliate program",
)
async def enroll_affiliate(
    account_id: str,
    affiliates: AffiliateProgram = Depends(get_affiliate_program),
) -> Dict[str, Any]:
    account = await affiliates.enroll(account_id)
    return {
        "account_id": account.id,
        "affiliate_code": account.affiliate_code,
        "affiliate_enrolled_at": account.affiliate_enrolled_at,
    }


@affiliate_router.put(
    "/{account_id}/payout-destination",
    response_model=PayoutDestinationResponse,
    summary="Set payout destination",
    description="Store the Stripe Connect account and queue earnings accrued so far",
)
async def set_payout_destination(
    account_id: str,
    request: PayoutDestinationRequest,
    affiliates: AffiliateProgram = Depends(get_affiliate_program),
) -> Dict[str, Any]:
    transfer = await affiliates.set_payout_destination(
        account_id, request.stripe_connect_account_id
    )
    return {
        "account_id": account_id,
        "stripe_connect_account_id": request.stripe_connect_account_id,
        "deferred_transfer": TransferResponse.model_validate(transfer) if transfer else None,
    }


@affiliate_router.get(
    "/{account_id}/transfers",
    response_model=List[TransferResponse],
    summary="List commission transfers",
)
async def list_transfers(
    account_id: str,
    affiliates: AffiliateProgram = Depends(get_affiliate_program),
) -> List[TransferResponse]:
    transfers = await affiliates.list_transfers(account_id)
    return [TransferResponse.model_validate(t) for t in transfers]


@billing_router.post(
    "/checkout",
    response_model=SessionUrlResponse,
    summary="Start a subscription checkout",
)
async def create_checkout(
    request: CheckoutRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, str]:
    url = await checkout.create_checkout_session(request.account_id, request.price_id)
    return {"url": url}


@billing_router.post(
    "/portal",
    response_model=SessionUrlResponse,
    summary="Open the billing portal",
)
async def create_portal(
    request: PortalRequest,
    checkout: CheckoutService = Depends(get_checkout_service),
) -> Dict[str, str]:
    url = await checkout.create_portal_session(request.account_id)
    return {"url": url}


@admin_router.post(
    "/payouts/sweep",
    response_model=SweepResponse,
    summary="Run a payout sweep",
    description="Attempt every pending commission transfer now",
)
async def run_sweep(
    payouts: PayoutDispatcher = Depends(get_payout_dispatcher),
) -> Dict[str, Any]:
    report = await payouts.sweep()
    logger.info("api_sweep_completed", attempted=report.attempted)
    return report.to_dict()


@admin_router.post(
    "/transfers/{transfer_id}/requeue",
    response_model=TransferResponse,
    summary="Requeue a failed transfer",
)
async def requeue_transfer(
    transfer_id: uuid.UUID,
    payouts: PayoutDispatcher = Depends(get_payout_dispatcher),
) -> TransferResponse:
    return TransferResponse.model_validate(await payouts.requeue(transfer_id))


@admin_router.post(
    "/events/{event_id}/replay",
    response_model=ReplayResponse,
    summary="Replay a stored event",
    description="Re-run an event whose processing failed after it was recorded",
)
async def replay_event(
    event_id: str,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
) -> Dict[str, Any]:
    result = await dispatcher.replay(event_id)
    return {
        "event_id": result.event_id,
        "event_type": result.event_type,
        "status": result.status.value,
        "sweep": result.sweep.to_dict() if result.sweep else None,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
