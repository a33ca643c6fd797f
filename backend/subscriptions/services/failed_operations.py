"""Durable queue of correctness-critical side effects awaiting retry."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from subscriptions.models import FailedOperation, Subscriber
from subscriptions.observability.metrics import REVOKE_FAILURE_COUNT

logger = logging.getLogger(__name__)


def retry_delay(attempts: int) -> timedelta:
    """Backoff before the next drain attempt: 2^attempts minutes."""

    return timedelta(minutes=2 ** attempts)


def enqueue_failed_operation(
    subscriber: Subscriber,
    action: str,
    error: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    now=None,
) -> FailedOperation:
    """Record a failed critical effect; at most one pending row per action.

    A second failure for the same pending ``(subscriber, action)`` refreshes
    the stored error and keeps the existing schedule and attempt count.
    """

    now = now or timezone.now()
    delay = timedelta(minutes=getattr(settings, "FAILED_OPERATION_INITIAL_DELAY_MINUTES", 5))
    defaults = {
        "payload": payload or {},
        "error_message": error[:2000],
        "max_attempts": getattr(settings, "FAILED_OPERATION_MAX_ATTEMPTS", 5),
        "next_retry_at": now + delay,
    }
    with transaction.atomic():
        operation, created = FailedOperation.objects.get_or_create(
            subscriber=subscriber,
            action=action,
            status=FailedOperation.Status.PENDING,
            defaults=defaults,
        )
        if not created:
            operation.error_message = error[:2000]
            operation.save(update_fields=["error_message", "updated_at"])

    if action in (FailedOperation.Action.KICK_EXPIRED, FailedOperation.Action.KICK_SUSPENDED):
        REVOKE_FAILURE_COUNT.labels(action=action).inc()
    logger.warning(
        "Queued %s for subscriber %s (created=%s, next_retry_at=%s): %s",
        action,
        subscriber.pk,
        created,
        operation.next_retry_at.isoformat(),
        error,
    )
    return operation


def has_pending_operation(subscriber_id, action: str) -> bool:
    return FailedOperation.objects.filter(
        subscriber_id=subscriber_id,
        action=action,
        status=FailedOperation.Status.PENDING,
    ).exists()


def requeue_manual_operations(*, ids: Optional[Iterable[int]] = None, now=None) -> Dict[str, int]:
    """Move rows flagged for manual intervention back to the pending queue.

    Rows whose subscriber already has a pending operation of the same action
    are left flagged.
    """

    now = now or timezone.now()
    queryset = FailedOperation.objects.filter(status=FailedOperation.Status.MANUAL_INTERVENTION)
    if ids is not None:
        queryset = queryset.filter(pk__in=list(ids))

    stats = {"requeued": 0, "skipped": 0}
    for operation in queryset:
        operation.status = FailedOperation.Status.PENDING
        operation.attempts = 0
        operation.next_retry_at = now
        operation.processed_at = None
        try:
            with transaction.atomic():
                operation.save(update_fields=["status", "attempts", "next_retry_at", "processed_at", "updated_at"])
        except IntegrityError:
            logger.info("Operation %s not requeued; a pending %s already exists", operation.pk, operation.action)
            stats["skipped"] += 1
            continue
        stats["requeued"] += 1
    return stats
