"""Prometheus metrics for settlement outcomes, processor health, and realtime fan-out"""

from prometheus_client import Counter, Histogram, Gauge

# Settlement lifecycle
settlement_transition_counter = Counter(
    "settlement_transitions_total",
    "Settlement status transitions applied",
    ["status"],  # processing | completed | failed | cancelled
)

settlement_amount_histogram = Histogram(
    "settlement_completed_amount_minor",
    "Completed settlement amounts in minor units",
    buckets=[1_000, 10_000, 50_000, 100_000, 500_000, 1_000_000],
)

swept_settlement_counter = Counter(
    "settlement_swept_total",
    "In-flight settlements failed by the reconciler after their deadline",
)

# Netting
plan_savings_histogram = Histogram(
    "settlement_plan_savings_percent",
    "Transaction-count savings of computed plans",
    buckets=[0, 10, 25, 50, 75, 90, 100],
)

group_outstanding_gauge = Gauge(
    "settlement_group_outstanding_minor",
    "Total outstanding debt in a group after the last recompute",
    ["group_id"],
)

# Payment processor
processor_latency_histogram = Histogram(
    "processor_latency_seconds",
    "Payment processor response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

processor_failure_counter = Counter(
    "processor_failures_total",
    "Failed payment processor calls",
    ["kind"],  # timeout | transport | declined | invalid_response
)

# Realtime
coalesced_event_counter = Counter(
    "realtime_events_coalesced_total",
    "BalanceChanged events replaced by a newer one inside the coalescing window",
)

outbox_redelivery_counter = Counter(
    "outbox_redeliveries_total",
    "Outbox events published by the reconciler",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_settlement(status: str, amount_minor: int) -> None:
    """Record a terminal or intermediate settlement transition"""
    settlement_transition_counter.labels(status=status).inc()
    if status == "completed":
        settlement_amount_histogram.observe(amount_minor)


def record_outstanding(group_id: str, balances) -> None:
    """Track how much is still owed in a group after a recompute"""
    outstanding = sum(b.net_balance for b in balances if b.net_balance > 0)
    group_outstanding_gauge.labels(group_id=group_id).set(outstanding)
