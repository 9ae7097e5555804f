"""
Prometheus metrics: committed / rejected transitions, ledger compensations,
audit write failures and dead letters, pending-order badge counts.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Engine: transition outcomes
order_transitions_total = Counter(
    "order_transitions_total",
    "Total committed order commands",
    ["command"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order commands rejected with a business error",
    ["reason"],
)
inventory_compensations_total = Counter(
    "inventory_compensations_total",
    "Total stock decrements rolled back because the order write failed",
)
orders_deleted_total = Counter(
    "orders_deleted_total",
    "Total orders deleted",
)

# Audit log: best-effort writes
audit_writes_failed_total = Counter(
    "audit_writes_failed_total",
    "Total failed audit write attempts (each retry counts)",
)
audit_writes_dlq_total = Counter(
    "audit_writes_dlq_total",
    "Total audit entries moved to the DLQ after max retries",
)

# Notification aggregator: new_request count per scope (company id or "all")
orders_pending = Gauge(
    "orders_pending",
    "Orders awaiting action (status new_request), refreshed on the polling cadence",
    ["scope"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
