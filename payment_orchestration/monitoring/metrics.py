"""
Prometheus metrics for payment orchestration monitoring.

Tracks:
- Payment processing outcomes and duration
- Pipeline step outcomes
- Provider call counts, latency and circuit breaker state
- Compensation (reversal) outcomes
- Webhook delivery attempts, dead letters and retry queue depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_processed_total = Counter(
    "payments_processed_total",
    "Total number of payments processed",
    ["status", "source_currency", "target_currency"],
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "Payment processing duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

payment_steps_total = Counter(
    "payment_steps_total",
    "Total pipeline steps recorded",
    ["step", "outcome"],
)

payment_claim_conflicts_total = Counter(
    "payment_claim_conflicts_total",
    "Processing attempts that lost the PENDING -> PROCESSING race",
)

payments_requiring_reconciliation_total = Counter(
    "payments_requiring_reconciliation_total",
    "Payments flagged for manual reconciliation",
    ["reason"],  # reversal_failed, outcome_unknown
)

# Provider metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total settlement provider requests",
    ["provider", "operation", "status"],
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Settlement provider call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Compensation metrics
compensations_total = Counter(
    "compensations_total",
    "Total compensating reversals attempted",
    ["status"],  # success, failed
)

# Webhook metrics
webhook_events_published_total = Counter(
    "webhook_events_published_total",
    "Total webhook events published",
    ["event_type"],
)

webhook_delivery_attempts_total = Counter(
    "webhook_delivery_attempts_total",
    "Total webhook delivery attempts",
    ["status"],  # delivered, retry_scheduled, dead_lettered
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Webhook delivery request duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_dead_letters_total = Counter(
    "webhook_dead_letters_total",
    "Total deliveries moved to the dead letter table",
    ["reason"],
)

webhook_queue_depth = Gauge(
    "webhook_queue_depth",
    "Deliveries claimed by the last worker poll",
)

webhook_batch_duration_seconds = Histogram(
    "webhook_batch_duration_seconds",
    "Delivery worker batch duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_processed(
        status: str, source_currency: str, target_currency: str, duration_seconds: float
    ) -> None:
        """Record a finished processing attempt."""
        payments_processed_total.labels(
            status=status, source_currency=source_currency, target_currency=target_currency
        ).inc()
        payment_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_step(step: str, outcome: str) -> None:
        """Record a pipeline step outcome."""
        payment_steps_total.labels(step=step, outcome=outcome).inc()

    @staticmethod
    def record_claim_conflict() -> None:
        payment_claim_conflicts_total.inc()

    @staticmethod
    def record_reconciliation_required(reason: str) -> None:
        payments_requiring_reconciliation_total.labels(reason=reason).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record settlement provider call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_compensation(success: bool) -> None:
        compensations_total.labels(status="success" if success else "failed").inc()

    @staticmethod
    def record_event_published(event_type: str) -> None:
        webhook_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_delivery_attempt(status: str, duration_seconds: float) -> None:
        """Record webhook delivery attempt."""
        webhook_delivery_attempts_total.labels(status=status).inc()
        webhook_delivery_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_dead_letter(reason: str) -> None:
        webhook_dead_letters_total.labels(reason=reason).inc()

    @staticmethod
    def record_delivery_batch(claimed: int, duration_seconds: float) -> None:
        """Record a delivery worker poll."""
        webhook_queue_depth.set(claimed)
        webhook_batch_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
