"""Prometheus metrics for MailWatch.

Defines and exposes operational metrics for monitoring and alerting.
"""

from prometheus_client import Counter, Histogram, Gauge

# Notification pipeline
notifications_received_total = Counter(
    "mailwatch_notifications_received_total",
    "Total change notifications accepted by the webhook",
)

notifications_processed_total = Counter(
    "mailwatch_notifications_processed_total",
    "Notifications by pipeline outcome",
    ["outcome"]  # outcome: forwarded|archived|skipped|duplicate|failed
)

notifications_dropped_total = Counter(
    "mailwatch_notifications_dropped_total",
    "Malformed notification elements dropped by the validator",
)

# Forwarding
forwards_total = Counter(
    "mailwatch_forwards_total",
    "Forward attempts to downstream sinks",
    ["target_service", "status"]  # status: success|error
)

forward_duration_seconds = Histogram(
    "mailwatch_forward_duration_seconds",
    "Time spent forwarding a payload downstream",
    ["target_service"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Subscriptions
subscription_operations_total = Counter(
    "mailwatch_subscription_operations_total",
    "Subscription lifecycle operations",
    ["operation", "status"]  # operation: create|renew|delete|fallback, status: success|error|not_found
)

scheduled_renewals = Gauge(
    "mailwatch_scheduled_renewals",
    "Number of subscriptions armed in the renewal index",
)

# Dedup cache
dedup_cache_entries = Gauge(
    "mailwatch_dedup_cache_entries",
    "Number of live entries in the dedup cache",
)
