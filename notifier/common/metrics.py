"""Prometheus metrics for observability."""

from prometheus_client import Counter, Gauge, Histogram

# Consumer metrics
MESSAGES_PROCESSED = Counter(
    "notifier_messages_processed_total",
    "Total number of queue messages resolved",
    ["disposition"],  # acked, dropped, requeued
)

# Notification API metrics
NOTIFICATIONS_SENT = Counter(
    "notifier_notifications_sent_total",
    "Outbound notification requests by outcome",
    ["outcome"],  # delivered, rejected, transport_failure
)

SEND_DURATION = Histogram(
    "notifier_send_duration_seconds",
    "Outbound notification request duration",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Broker metrics
BROKER_CONNECTED = Gauge(
    "notifier_broker_connected",
    "1 while a broker connection and channel are open",
)

RECONNECT_ATTEMPTS = Counter(
    "notifier_reconnect_attempts_total",
    "Total number of broker reconnect attempts",
)

HEALTH_CHECK_FAILURES = Counter(
    "notifier_health_check_failures_total",
    "Failed periodic queue existence checks",
)
