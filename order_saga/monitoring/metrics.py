"""
Prometheus metrics for the order saga.

Tracks:
- Order outcomes and saga duration
- Saga step attempts by step and status
- Idempotent replays
- Circuit breaker state per dependency
- Outbox publication and queue depth
- Payment ledger transactions
- Injected chaos faults
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_total = Counter(
    "orders_total",
    "Total number of order creation outcomes",
    ["outcome"],  # confirmed, failed, replayed, cancelled
)

saga_duration_seconds = Histogram(
    "saga_duration_seconds",
    "Order saga duration in seconds",
    ["outcome"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

saga_step_attempts_total = Counter(
    "saga_step_attempts_total",
    "Total saga step attempts",
    ["step", "status", "compensation"],
)

# Idempotency metrics
idempotency_lookups_total = Counter(
    "idempotency_lookups_total",
    "Idempotency ledger lookups",
    ["scope", "source"],  # source: redis, database, miss
)

idempotency_races_total = Counter(
    "idempotency_races_total",
    "Duplicate key inserts resolved by replaying the winner",
    ["scope"],
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["dependency"],
)

circuit_breaker_rejections_total = Counter(
    "circuit_breaker_rejections_total",
    "Calls rejected by an open circuit breaker",
    ["dependency"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of pending events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Total outbox publish failures",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outbox_last_batch_timestamp = Gauge(
    "outbox_last_batch_timestamp",
    "Timestamp of the last dispatcher batch",
)

# Payment ledger metrics
payment_transactions_total = Counter(
    "payment_transactions_total",
    "Payment ledger transactions written",
    ["operation", "status"],
)

# Chaos metrics
chaos_injections_total = Counter(
    "chaos_injections_total",
    "Injected faults",
    ["kind"],  # latency, error
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_outcome(outcome: str, duration_seconds: float | None = None) -> None:
        """Record how an order request ended."""
        orders_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            saga_duration_seconds.labels(outcome=outcome).observe(duration_seconds)

    @staticmethod
    def record_step_attempt(step: str, status: str, compensation: bool) -> None:
        """Record a single saga step attempt."""
        saga_step_attempts_total.labels(
            step=step, status=status, compensation=str(compensation).lower()
        ).inc()

    @staticmethod
    def record_idempotency_lookup(scope: str, source: str) -> None:
        """Record where an idempotency lookup was answered."""
        idempotency_lookups_total.labels(scope=scope, source=source).inc()

    @staticmethod
    def record_idempotency_race(scope: str) -> None:
        idempotency_races_total.labels(scope=scope).inc()

    @staticmethod
    def set_circuit_breaker_state(dependency: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1}
        circuit_breaker_state.labels(dependency=dependency).set(state_map.get(state, 0))

    @staticmethod
    def record_circuit_breaker_rejection(dependency: str) -> None:
        circuit_breaker_rejections_total.labels(dependency=dependency).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_publish_failure(event_type: str) -> None:
        outbox_publish_failures_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record a dispatcher batch."""
        outbox_processing_duration_seconds.observe(duration_seconds)
        outbox_last_batch_timestamp.set(time.time())

    @staticmethod
    def record_payment_transaction(operation: str, status: str) -> None:
        """Record a payment ledger write."""
        payment_transactions_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_chaos_injection(kind: str) -> None:
        chaos_injections_total.labels(kind=kind).inc()


# Export singleton instance
metrics = MetricsCollector()
