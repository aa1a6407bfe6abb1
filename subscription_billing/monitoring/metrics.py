"""
Prometheus metrics for payment event processing.

Tracks:
- Webhook events received / processed by outcome
- Optimistic concurrency conflicts on subscription save
- Processing duration
"""
from prometheus_client import Counter, Histogram

webhook_events_received_total = Counter(
    "billing_webhook_events_received_total",
    "Total payment events received",
    ["event"],
)

webhook_events_processed_total = Counter(
    "billing_webhook_events_processed_total",
    "Total payment events handled",
    ["event", "status"],  # processed, duplicate, failed
)

subscription_save_conflicts_total = Counter(
    "billing_subscription_save_conflicts_total",
    "Version conflicts detected while saving a subscription",
)

payment_event_processing_seconds = Histogram(
    "billing_payment_event_processing_seconds",
    "Payment event processing duration in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)
