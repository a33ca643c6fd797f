"""Prometheus metrics helpers for the subscription engine."""
from __future__ import annotations

from prometheus_client import Counter

REMINDER_SENT_COUNT = Counter(
    "subscriptions_reminder_sent_total",
    "Expiry reminders delivered by the sweep",
    labelnames=("kind",),
)

EXPIRATION_COUNT = Counter(
    "subscriptions_expired_total",
    "Subscribers moved to expired after a successful revoke",
    labelnames=("source",),
)

REVOKE_FAILURE_COUNT = Counter(
    "subscriptions_revoke_failure_total",
    "Revokes that failed and were queued for retry",
    labelnames=("action",),
)

DRAIN_OUTCOME_COUNT = Counter(
    "subscriptions_failed_operation_drain_total",
    "Outcomes of failed-operation drain attempts",
    labelnames=("action", "outcome"),
)

WEBHOOK_OUTCOME_COUNT = Counter(
    "subscriptions_webhook_total",
    "Payment webhook deliveries by outcome",
    labelnames=("source", "outcome"),
)

GATEWAY_RETRY_COUNT = Counter(
    "subscriptions_gateway_retry_total",
    "Retries performed against external gateways",
    labelnames=("operation",),
)
