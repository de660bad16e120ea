"""
Prometheus metrics for booking settlement monitoring.

Tracks:
- Settlement outcomes by booking kind
- Settlement processing duration
- Capacity reservations (reserved / sold out / unknown event)
- Idempotency hits by source
- Compensating refunds
- Stripe API calls and errors
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Settlement metrics
settlement_outcomes_total = Counter(
    "settlement_outcomes_total",
    "Total settlement attempts by outcome",
    ["outcome", "booking_kind"],  # settled, duplicate, exhausted, malformed, ignored
)

settlement_duration_seconds = Histogram(
    "settlement_duration_seconds",
    "Settlement processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

settlement_races_total = Counter(
    "settlement_races_total",
    "Concurrent deliveries of one notification that lost the ledger insert",
)

# Capacity metrics
capacity_reservations_total = Counter(
    "capacity_reservations_total",
    "Total capacity reservation attempts",
    ["booking_kind", "status"],  # reserved, sold_out, unknown_event
)

# Idempotency metrics
idempotency_hits_total = Counter(
    "idempotency_hits_total",
    "Total notifications recognised as already settled",
    ["source"],  # redis, database
)

# Compensation metrics
compensations_total = Counter(
    "compensations_total",
    "Total compensating refunds attempted",
    ["status"],  # refunded, failed
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
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

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhook deliveries rejected before settlement",
    ["reason"],  # authentication, store_unavailable
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Outbox events whose publish attempts were all exhausted",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outbox_last_run_timestamp = Gauge(
    "outbox_last_run_timestamp",
    "Timestamp of last outbox batch",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_settlement(outcome: str, booking_kind: str, duration_seconds: float) -> None:
        """Record a settlement outcome."""
        settlement_outcomes_total.labels(outcome=outcome, booking_kind=booking_kind).inc()
        settlement_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_settlement_race() -> None:
        settlement_races_total.inc()

    @staticmethod
    def record_capacity_reservation(booking_kind: str, status: str) -> None:
        """Record a capacity reservation attempt."""
        capacity_reservations_total.labels(booking_kind=booking_kind, status=status).inc()

    @staticmethod
    def record_idempotency_hit(source: str) -> None:
        idempotency_hits_total.labels(source=source).inc()

    @staticmethod
    def record_compensation(status: str) -> None:
        compensations_total.labels(status=status).inc()

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
    def record_webhook_received(event_type: str) -> None:
        webhook_events_received_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_webhook_rejection(reason: str) -> None:
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_publish_failure(event_type: str) -> None:
        outbox_publish_failures_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record an outbox batch run."""
        outbox_processing_duration_seconds.observe(duration_seconds)
        outbox_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
