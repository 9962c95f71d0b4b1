"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Histogram

# Usage metrics
usage_intervals_started_total = Counter(
    "usage_intervals_started_total",
    "Total usage intervals opened",
)

usage_intervals_closed_total = Counter(
    "usage_intervals_closed_total",
    "Total usage intervals closed",
)

usage_minutes_recorded_total = Counter(
    "usage_minutes_recorded_total",
    "Total billable minutes recorded on closed intervals",
)

# Credential metrics
credentials_registered_total = Counter(
    "credentials_registered_total",
    "Total payment credentials registered",
    labelnames=["method_kind", "tokenized"],
)

vault_failures_total = Counter(
    "vault_failures_total",
    "Credential vault decryption failures",
    labelnames=["reason"],  # format, integrity
)

# Settlement metrics
settlement_runs_total = Counter(
    "settlement_runs_total",
    "Total settlement runs started",
)

settlement_outcomes_total = Counter(
    "settlement_outcomes_total",
    "Per-user settlement outcomes",
    labelnames=["status"],  # success, failed, skipped, cancelled
)

settlement_amount_cents_total = Counter(
    "settlement_amount_cents_total",
    "Total amount settled or attempted, in cents",
    labelnames=["outcome"],  # success, failed
)

settlement_run_duration_seconds = Histogram(
    "settlement_run_duration_seconds",
    "Wall-clock duration of a settlement run",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)

gateway_charge_duration_seconds = Histogram(
    "gateway_charge_duration_seconds",
    "Latency of payment gateway charge calls",
    labelnames=["outcome"],  # success, declined, error, timeout
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

reconciliation_required_total = Counter(
    "reconciliation_required_total",
    "Successful charges whose intervals could not be marked paid",
)
