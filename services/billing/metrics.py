"""Prometheus counters for billing reconciliation."""

from __future__ import annotations

from prometheus_client import Counter

WEBHOOK_OUTCOMES = Counter(
    "billing_webhook_outcomes_total",
    "Payment webhook deliveries by outcome.",
    ["result"],
)
REFUND_EXECUTIONS = Counter(
    "billing_refund_executions_total",
    "Refund execution attempts by result.",
    ["result"],
)
RETRY_BATCH_ITEMS = Counter(
    "billing_refund_retry_batch_items_total",
    "Refund requests processed by the retry batch.",
    ["result"],
)


def record_webhook_outcome(result: str) -> None:
    WEBHOOK_OUTCOMES.labels(result=result or "unknown").inc()


def record_refund_execution(result: str) -> None:
    REFUND_EXECUTIONS.labels(result=result).inc()


def record_retry_item(result: str) -> None:
    RETRY_BATCH_ITEMS.labels(result=result).inc()
