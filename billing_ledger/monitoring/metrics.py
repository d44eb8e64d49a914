"""
Prometheus metrics for billing ledger monitoring.

Tracks:
- Webhook events by kind and outcome
- Stripe API calls, errors and circuit breaker state
- Commissions recorded and reversed
- Payout transfers by outcome and the pending backlog
- Refunds that could not be reclaimed (reconciliation gaps)
"""
from prometheus_client import Counter, Gauge, Histogram

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],  # operation: create_transfer, retrieve_customer, etc.
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, duplicate, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhook deliveries rejected before processing",
    ["reason"],  # signature, parse
)

# Commission metrics
commissions_recorded_total = Counter(
    "commissions_recorded_total",
    "Referral conversions that credited an affiliate",
)

commission_amount_dollars = Histogram(
    "commission_amount_dollars",
    "Commission amounts in major currency units",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000),
)

commission_reversals_total = Counter(
    "commission_reversals_total",
    "Commission reversals on refund",
    ["status"],  # reversed, reversal_failed
)

commission_refund_gaps_total = Counter(
    "commission_refund_gaps_total",
    "Refunds whose commission transfer was still pending or failed",
    ["transfer_status"],
)

# Payout metrics
payout_transfers_total = Counter(
    "payout_transfers_total",
    "Payout transfer attempts",
    ["status"],  # completed, recovered, failed, storage_error
)

payout_sweep_duration_seconds = Histogram(
    "payout_sweep_duration_seconds",
    "Payout sweep duration in seconds",
    buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

payout_pending_transfers = Gauge(
    "payout_pending_transfers",
    "Pending commission transfers seen by the last sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_rejection(reason: str) -> None:
        """Record a webhook rejected before dedup."""
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_commission(amount: float) -> None:
        """Record a converted referral."""
        commissions_recorded_total.inc()
        commission_amount_dollars.observe(amount)

    @staticmethod
    def record_commission_reversal(status: str) -> None:
        """Record a refund-driven commission reversal."""
        commission_reversals_total.labels(status=status).inc()

    @staticmethod
    def record_refund_gap(transfer_status: str) -> None:
        """Record a refund that left a pending or failed transfer untouched."""
        commission_refund_gaps_total.labels(transfer_status=transfer_status).inc()

    @staticmethod
    def record_payout_transfer(status: str) -> None:
        """Record one payout transfer outcome."""
        payout_transfers_total.labels(status=status).inc()

    @staticmethod
    def record_sweep(pending_count: int, duration_seconds: float) -> None:
        """Record a payout sweep."""
        payout_pending_transfers.set(pending_count)
        payout_sweep_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
