"""
Prometheus metrics for the payment queue.

Tracks:
- Queue lifecycle events by queue and kind
"""
from prometheus_client import Counter

payment_queue_events_total = Counter(
    "payment_queue_events_total",
    "Total payment queue lifecycle events",
    ["queue", "kind"],  # waiting, delayed, active, progress, completed, failed, ...
)


def record_queue_event(queue, kind):
    payment_queue_events_total.labels(queue=queue, kind=kind).inc()
