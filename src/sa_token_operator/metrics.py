"""Prometheus metrics for the ServiceAccount Token Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "sa_token_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "sa_token_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

error_total = Counter(
    "sa_token_operator_error_total",
    "Total number of reconciliation errors",
    ["kind", "error_type"],
)

# Token secret metrics
ensure_total = Counter(
    "sa_token_operator_ensure_total",
    "Total number of ensure calls for ServiceAccount token secrets",
    ["result"],
)

ensure_duration_seconds = Histogram(
    "sa_token_operator_ensure_duration_seconds",
    "Duration of ensure calls in seconds, including lock waits",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

secrets_created_total = Counter(
    "sa_token_operator_secrets_created_total",
    "Total number of token secrets created",
)

secrets_deleted_total = Counter(
    "sa_token_operator_secrets_deleted_total",
    "Total number of invalid or duplicate token secrets deleted",
    ["result"],
)

token_wait_polls = Histogram(
    "sa_token_operator_token_wait_polls",
    "Number of polls needed until a token secret was populated",
    buckets=[1, 2, 5, 10, 20, 50],
)

# Lease metrics
lease_acquire_attempts_total = Counter(
    "sa_token_operator_lease_acquire_attempts_total",
    "Total number of lease create attempts",
    ["result"],
)

lease_release_total = Counter(
    "sa_token_operator_lease_release_total",
    "Total number of lease releases",
    ["result"],
)

lease_renew_total = Counter(
    "sa_token_operator_lease_renew_total",
    "Total number of lease renewals while held",
    ["result"],
)

# API call metrics
api_call_total = Counter(
    "sa_token_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "sa_token_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)
