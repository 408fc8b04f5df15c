"""
Prometheus metrics: transitions applied and rejected, admin overrides, disputes, payments.
"""
from prometheus_client import Counter, generate_latest

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions applied",
    ["actor_role", "from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected, by reason",
    ["reason"],
)
admin_overrides_total = Counter(
    "admin_overrides_total",
    "Total audited admin overrides of the order lifecycle",
    ["to_status"],
)
disputes_opened_total = Counter(
    "disputes_opened_total",
    "Total disputes opened (order forced to disputed)",
    ["category"],
)
payments_initiated_total = Counter(
    "payments_initiated_total",
    "Total mobile money payment requests recorded as pending",
)
payments_confirmed_total = Counter(
    "payments_confirmed_total",
    "Total payments confirmed and orders completed",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
