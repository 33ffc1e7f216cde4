"""
Prometheus metrics for the billing engine.

Tracks:
- Usage charges reported to the gateway
- Revenue recognized and deferred
- Payment retries and escalations
- Dunning steps executed
- Gateway call latency and errors
- Sweep outcomes and lock contention
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Usage billing metrics
usage_charges_reported_total = Counter(
    "usage_charges_reported_total",
    "Total usage charges reported to the gateway",
    ["feature_id", "status"],  # reported, failed
)

usage_charge_amount_cents = Histogram(
    "usage_charge_amount_cents",
    "Usage charge amounts in cents",
    buckets=(0, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 1000000),
)

# Revenue metrics
revenue_recognized_cents_total = Counter(
    "revenue_recognized_cents_total",
    "Total revenue recognized in cents",
    ["recognition_type"],
)

revenue_deferred_cents_total = Counter(
    "revenue_deferred_cents_total",
    "Total revenue deferred in cents",
)

revenue_integrity_violations_total = Counter(
    "revenue_integrity_violations_total",
    "Deferred entries halted on a ledger invariant mismatch",
)

# Payment retry metrics
payment_retries_total = Counter(
    "payment_retries_total",
    "Total payment retry executions",
    ["policy", "outcome"],  # succeeded, rescheduled, exhausted
)

payment_escalations_total = Counter(
    "payment_escalations_total",
    "Payments escalated to manual intervention",
)

# Dunning metrics
dunning_steps_executed_total = Counter(
    "dunning_steps_executed_total",
    "Total dunning steps executed",
    ["action"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total billing gateway requests",
    ["operation", "status"],  # success, error, timeout
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total billing gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Billing gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Sweep metrics
sweep_entities_total = Counter(
    "sweep_entities_total",
    "Entities handled by sweeps",
    ["sweep", "outcome"],  # processed, skipped, error
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Sweep duration in seconds",
    ["sweep"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of the last completed sweep",
    ["sweep"],
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished notifications in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox notifications delivered",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outbox_delivery_failures_total = Counter(
    "outbox_delivery_failures_total",
    "Total failed outbox deliveries",
    ["event_type", "outcome"],  # retry, dead
)

# Usage limit metrics
usage_limit_alerts_total = Counter(
    "usage_limit_alerts_total",
    "Total usage limit alerts raised",
    ["level"],  # warning, critical, exceeded
)

# Lock metrics
subscription_lock_acquisitions_total = Counter(
    "subscription_lock_acquisitions_total",
    "Total subscription lock acquisition attempts",
    ["status"],  # acquired, contended, error
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_usage_charge(feature_id: str, status: str, amount_cents: int) -> None:
        """Record a usage charge report outcome."""
        usage_charges_reported_total.labels(feature_id=feature_id, status=status).inc()
        if status == "reported":
            usage_charge_amount_cents.observe(amount_cents)

    @staticmethod
    def record_revenue_recognized(recognition_type: str, amount_cents: int) -> None:
        """Record recognized revenue."""
        revenue_recognized_cents_total.labels(recognition_type=recognition_type).inc(
            amount_cents
        )

    @staticmethod
    def record_revenue_deferred(amount_cents: int) -> None:
        """Record newly deferred revenue."""
        revenue_deferred_cents_total.inc(amount_cents)

    @staticmethod
    def record_integrity_violation() -> None:
        """Record a halted deferred entry."""
        revenue_integrity_violations_total.inc()

    @staticmethod
    def record_payment_retry(policy: str, outcome: str) -> None:
        """Record a payment retry execution."""
        payment_retries_total.labels(policy=policy, outcome=outcome).inc()
        if outcome == "exhausted":
            payment_escalations_total.inc()

    @staticmethod
    def record_dunning_step(action: str) -> None:
        """Record an executed dunning step."""
        dunning_steps_executed_total.labels(action=action).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a billing gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a billing gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_sweep(
        sweep: str, processed: int, skipped: int, errors: int, duration_seconds: float
    ) -> None:
        """Record the outcome of one sweep run."""
        sweep_entities_total.labels(sweep=sweep, outcome="processed").inc(processed)
        sweep_entities_total.labels(sweep=sweep, outcome="skipped").inc(skipped)
        sweep_entities_total.labels(sweep=sweep, outcome="error").inc(errors)
        sweep_duration_seconds.labels(sweep=sweep).observe(duration_seconds)
        sweep_last_run_timestamp.labels(sweep=sweep).set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event delivered."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_outbox_delivery_failure(event_type: str, dead: bool) -> None:
        """Record a failed delivery; dead when the event is out of attempts."""
        outcome = "dead" if dead else "retry"
        outbox_delivery_failures_total.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_usage_limit_alert(level: str) -> None:
        """Record usage limit alert."""
        usage_limit_alerts_total.labels(level=level).inc()

    @staticmethod
    def record_subscription_lock(status: str) -> None:
        """Record subscription lock acquisition."""
        subscription_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
