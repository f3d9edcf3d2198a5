"""Prometheus counters for the order lifecycle."""

from prometheus_client import Counter

CANCELLATION_FAILURES = Counter(
    "cancellation_failures_swallowed_total",
    "Conflicting-order cancellations that failed and were ignored",
    ["symbol"],
)
AUTO_EXIT_ORDERS = Counter(
    "auto_exit_orders_total",
    "Automated exit orders accepted by the broker",
    ["reason"],
)
AUTO_EXIT_FAILURES = Counter(
    "auto_exit_failures_total",
    "Automated exit orders that were rejected or errored",
)
RECONCILIATION_TICKS = Counter(
    "reconciliation_ticks_total",
    "Reconciliation ticks by outcome",
    ["outcome"],
)
FILL_CHECKS = Counter(
    "fill_checks_total",
    "One-shot market order fill checks by result",
    ["result"],
)
