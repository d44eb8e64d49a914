"""
Stripe API client with retry logic and error classification.

Implements:
- Exponential backoff for transient and rate-limited errors
- Circuit breaker pattern
- Idempotency keys on every call that moves money
- Plain-dict results so callers never depend on StripeObject internals
"""
import asyncio
import functools
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from billing_ledger.config import Settings, get_settings
from billing_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProcessorErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ExternalServiceError(Exception):
    """Raised when a call to the payment processor fails."""

    def __init__(
        self,
        message: str,
        error_type: ProcessorErrorType = ProcessorErrorType.TRANSIENT,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize processor error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


class ReversalError(ExternalServiceError):
    """Raised when a transfer reversal cannot be created."""

    pass


def _is_retryable(error: BaseException) -> bool:
    return (
        isinstance(error, ExternalServiceError)
        and error.error_type is not ProcessorErrorType.PERMANENT
    )


retry_transient = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=16),
    reraise=True,
)


def _to_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Calls run on executor threads, so
    every read and write of the counters and state holds ``_lock``; the
    Stripe call itself runs outside it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            ExternalServiceError: If circuit is open
        """
        self._admit()

        try:
            result = func(*args, **kwargs)
        except stripe.StripeError as e:
            # Permanent errors are the caller's fault, not an outage signal
            if not isinstance(e, (stripe.CardError, stripe.InvalidRequestError)):
                self.on_failure()
            raise
        self.on_success()
        return result

    def _admit(self) -> None:
        with self._lock:
            if self.state != "open":
                return
            if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
                return
        raise ExternalServiceError("Circuit breaker is open", ProcessorErrorType.TRANSIENT)

    def _set_state(self, state: str) -> None:
        # Caller holds _lock
        self.state = state
        metrics.set_circuit_breaker_state(state)
        logger.info("circuit_breaker_state_changed", state=state)

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold and self.state != "open":
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
                self._set_state("open")


class StripeClient:
    """
    Wrapper for the Stripe calls the billing ledger makes.

    The Stripe SDK is synchronous; calls run in the default executor so a
    slow Stripe response never blocks other webhook deliveries.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        """Initialize Stripe client."""
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProcessorErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProcessorErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProcessorErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (stripe.APIConnectionError, stripe.APIError),
        ):
            return ProcessorErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return ProcessorErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProcessorErrorType.TRANSIENT

    def _wrap_error(
        self,
        operation: str,
        error: stripe.StripeError,
        error_class: type = ExternalServiceError,
    ) -> ExternalServiceError:
        error_type = self._classify_error(error)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        metrics.record_stripe_api_error(error_type.value)

        message = getattr(error, "user_message", None) or str(error)
        return error_class(message, error_type=error_type, original_error=error)

    async def _call(
        self,
        operation: str,
        func: Callable[[], Any],
        error_class: type = ExternalServiceError,
    ) -> Dict[str, Any]:
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                None, functools.partial(self.circuit_breaker.call, func)
            )
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
            raise self._wrap_error(operation, e, error_class) from e
        except ExternalServiceError:
            metrics.record_stripe_api_call(operation, "rejected", time.time() - start_time)
            raise

        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return _to_dict(result)

    @retry_transient
    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        """
        Retrieve a customer by ID.

        Args:
            customer_id: Stripe customer ID

        Returns:
            Dict[str, Any]: Customer object (may carry ``deleted: true``)

        Raises:
            ExternalServiceError: If retrieval fails
        """
        logger.info("retrieving_customer", customer_id=customer_id)
        return await self._call(
            "retrieve_customer", lambda: stripe.Customer.retrieve(customer_id)
        )

    @retry_transient
    async def retrieve_subscription(
        self, subscription_id: str, idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Retrieve a subscription by ID.

        Args:
            subscription_id: Stripe subscription ID
            idempotency_key: Key derived from the triggering invoice

        Raises:
            ExternalServiceError: If retrieval fails
        """
        logger.info(
            "retrieving_subscription",
            subscription_id=subscription_id,
            idempotency_key=idempotency_key,
        )

        def _retrieve() -> Any:
            kwargs: Dict[str, Any] = {}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Subscription.retrieve(subscription_id, **kwargs)

        return await self._call("retrieve_subscription", _retrieve)

    @retry_transient
    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Move platform funds to a connected account.

        Retries reuse the same idempotency key, so Stripe executes the
        transfer at most once.

        Args:
            amount_cents: Amount in minor units
            currency: Currency code (e.g. 'usd')
            destination: Connected account ID
            idempotency_key: Idempotency key for preventing duplicates
            metadata: Optional metadata

        Returns:
            Dict[str, Any]: Created transfer

        Raises:
            ExternalServiceError: If transfer creation fails
        """
        logger.info(
            "creating_transfer",
            amount_cents=amount_cents,
            currency=currency,
            destination=destination,
            idempotency_key=idempotency_key,
        )
        transfer = await self._call(
            "create_transfer",
            lambda: stripe.Transfer.create(
                amount=amount_cents,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            ),
        )
        logger.info("transfer_created", stripe_transfer_id=transfer.get("id"))
        return transfer

    @retry_transient
    async def reverse_transfer(
        self, transfer_id: str, idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Reverse a completed transfer in full.

        Args:
            transfer_id: Stripe transfer ID
            idempotency_key: Optional idempotency key

        Raises:
            ReversalError: If the reversal cannot be created
        """
        logger.info("creating_transfer_reversal", stripe_transfer_id=transfer_id)

        def _reverse() -> Any:
            kwargs: Dict[str, Any] = {}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Transfer.create_reversal(transfer_id, **kwargs)

        return await self._call("reverse_transfer", _reverse, error_class=ReversalError)

    async def create_checkout_session(
        self,
        price_id: str,
        customer_email: str,
        client_reference_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Create a subscription-mode Checkout Session.

        Raises:
            ExternalServiceError: If session creation fails
        """
        logger.info(
            "creating_checkout_session",
            price_id=price_id,
            client_reference_id=client_reference_id,
        )
        return await self._call(
            "create_checkout_session",
            lambda: stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                customer_email=customer_email,
                client_reference_id=client_reference_id,
                metadata={"userId": client_reference_id, "userEmail": customer_email},
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                billing_address_collection="required",
                automatic_tax={"enabled": True},
            ),
        )

    async def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """
        Create a billing portal session for a customer.

        Raises:
            ExternalServiceError: If session creation fails
        """
        logger.info("creating_portal_session", customer_id=customer_id)
        return await self._call(
            "create_portal_session",
            lambda: stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            ),
        )
