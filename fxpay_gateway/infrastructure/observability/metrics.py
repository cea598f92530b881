"""Prometheus metrics for payment outcomes, fraud screening, FX resolution and settlements"""

from prometheus_client import Counter, Histogram

# Payment metrics
payment_counter = Counter(
    "fxpay_payments_total",
    "Payments created",
    ["outcome"],  # initiated | blocked
)

payment_creation_histogram = Histogram(
    "fxpay_payment_creation_seconds",
    "Payment creation latency",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

payment_transition_counter = Counter(
    "fxpay_payment_transitions_total",
    "Payment lifecycle transitions",
    ["status"],
)

refund_counter = Counter(
    "fxpay_refunds_total",
    "Refunds recorded",
    ["kind"],  # partial | full
)

# Fraud metrics
risk_score_histogram = Histogram(
    "fxpay_risk_score",
    "Fraud risk score per assessed payment",
    buckets=[0, 5, 15, 30, 50, 70, 100],
)

fraud_flag_counter = Counter(
    "fxpay_fraud_flags_total",
    "Fraud flags raised",
    ["type", "severity"],
)

# FX metrics
rate_resolution_counter = Counter(
    "fxpay_rate_resolutions_total",
    "Exchange rate lookups by resolution tier",
    ["source"],  # identity | cache | cache-inverse | database | database-inverse | unavailable
)

rate_refresh_counter = Counter(
    "fxpay_rate_refresh_total",
    "Upstream rate refreshes per base currency",
    ["base", "outcome"],  # success | failure
)

rate_anomaly_counter = Counter(
    "fxpay_rate_anomalies_total",
    "Stored quotes flagged as anomalous",
)

# Idempotency metrics
idempotency_counter = Counter(
    "fxpay_idempotency_total",
    "Idempotency guard decisions",
    ["outcome"],  # proceed | replay | conflict
)

# Settlement metrics
settlement_counter = Counter(
    "fxpay_settlements_total",
    "Settlement status changes",
    ["status"],
)

reconciliation_counter = Counter(
    "fxpay_reconciliations_total",
    "Settlement reconciliations by outcome",
    ["status"],  # completed | discrepancy_found
)

bank_transfer_failures_counter = Counter(
    "fxpay_bank_transfer_failures_total",
    "Failed settlement bank transfers",
)

# Audit webhook metrics
audit_webhook_latency_histogram = Histogram(
    "audit_webhook_latency_seconds",
    "Audit webhook response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

audit_webhook_failure_counter = Counter(
    "audit_webhook_failures_total",
    "Failed audit webhook deliveries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_payment(status: str, risk_score: int, duration_seconds: float) -> None:
    """Record creation metrics for monitoring block rates and latency"""
    outcome = "blocked" if status == "failed" else "initiated"
    payment_counter.labels(outcome=outcome).inc()
    risk_score_histogram.observe(risk_score)
    payment_creation_histogram.observe(duration_seconds)
