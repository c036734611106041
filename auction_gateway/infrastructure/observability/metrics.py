"""Prometheus metrics for bidding, payment screening and settlement"""

from prometheus_client import Counter, Histogram

# Bid metrics
bid_counter = Counter(
    "auction_bids_total",
    "Bid placement attempts",
    ["outcome"],  # accepted | too_low | ended | self_bid | not_found
)

# Payment screening metrics
payment_validation_counter = Counter(
    "payment_validation_total",
    "Payment initiation screening outcomes",
    ["outcome"],  # allowed | amount | velocity | duplicate | fraud
)

risk_level_counter = Counter(
    "payment_risk_level_total",
    "Risk tiers assigned at initiation",
    ["risk_level"],  # low | medium | high
)

fail_open_counter = Counter(
    "payment_check_fail_open_total",
    "Screening checks skipped because a store was unavailable",
    ["check"],  # velocity | duplicate | history
)

# Settlement metrics
settlement_counter = Counter(
    "payment_settlement_total",
    "Settlement invocations",
    ["outcome"],  # settled | already_processed | failed
)

settlement_integrity_failure_counter = Counter(
    "payment_settlement_integrity_failures_total",
    "Settlements whose wallet credit failed (alert on any increase)",
)

reconciled_counter = Counter(
    "payment_reconciled_total",
    "Settled transactions credited by the reconciliation sweep",
)

# Fan-out metrics
notification_failure_counter = Counter(
    "notification_publish_failures_total",
    "Real-time events that could not be published",
    ["kind"],
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "gateway_verify_latency_seconds",
    "Payment gateway status lookup response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failure_counter = Counter(
    "gateway_verify_failures_total",
    "Failed payment gateway status lookups",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_bid(outcome: str) -> None:
    bid_counter.labels(outcome=outcome).inc()


def record_validation(allowed: bool, denial: str | None, risk_level: str) -> None:
    """Record screening outcome and, when scoring ran, the assigned tier"""
    payment_validation_counter.labels(outcome="allowed" if allowed else denial or "unknown").inc()
    if allowed or denial == "fraud":
        risk_level_counter.labels(risk_level=risk_level).inc()
