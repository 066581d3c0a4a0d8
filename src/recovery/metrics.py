"""Recovery metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge

# Failure intake
payment_failures_recorded_total = Counter(
    "payment_failures_recorded_total",
    "Total failed payments recorded",
    labelnames=["failure_kind", "currency"],
)

# Retry metrics
payment_retries_total = Counter(
    "payment_retries_total",
    "Retry executions by outcome",
    labelnames=["outcome", "manual"],  # outcome: succeeded, failed, deferred_transient...
)

recovered_amount_total = Counter(
    "recovered_amount_total",
    "Total amount recovered by retries in minor units",
    labelnames=["currency"],
)

# Dunning metrics
dunning_notifications_total = Counter(
    "dunning_notifications_total",
    "Dunning notifications processed",
    labelnames=["stage", "status"],  # status: sent, failed, deferred
)

# Cancellation metrics
subscription_cancellations_total = Counter(
    "subscription_cancellations_total",
    "Cancellations executed after dunning",
    labelnames=["status"],  # processed, failed, skipped
)

# Sweep health
sweep_errors_total = Counter(
    "sweep_errors_total",
    "Items that raised inside a recovery sweep",
    labelnames=["sweep"],
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Unix time of the last completed sweep",
    labelnames=["sweep"],
)
