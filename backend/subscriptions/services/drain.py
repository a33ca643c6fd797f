"""Drain of the failed-operation queue."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from audit.services import record_audit
from subscriptions import messages
from subscriptions.models import FailedOperation, Subscriber
from subscriptions.observability.metrics import DRAIN_OUTCOME_COUNT, EXPIRATION_COUNT
from subscriptions.services import access
from subscriptions.services.failed_operations import retry_delay
from subscriptions.services.lifecycle import commit_decision
from subscriptions.services.state_machine import EXPIRED, LifecycleEvent, SubscriberSnapshot, decide

logger = logging.getLogger(__name__)

DRAIN_ACTOR = "celery.drain_failed_operations"

SUCCEEDED = "succeeded"
OBSOLETE = "obsolete"
FAILED = "failed"
MANUAL_INTERVENTION = "manual_intervention"


@dataclass
class AttemptResult:
    outcome: str
    error: str = ""
    followup: Optional[Callable[[], None]] = None


def _lock_subscriber(pk) -> Subscriber:
    return (
        Subscriber.objects.select_for_update(of=("self",))
        .select_related("project", "plan")
        .get(pk=pk)
    )


def _kick_expired(operation: FailedOperation, now) -> AttemptResult:
    subscriber = _lock_subscriber(operation.subscriber_id)
    if not subscriber.is_lapsed(now):
        return AttemptResult(OBSOLETE)

    decision = decide(SubscriberSnapshot.from_subscriber(subscriber), LifecycleEvent.SWEEP, now=now)
    if decision.next_status != EXPIRED:
        return AttemptResult(OBSOLETE)

    result = access.revoke_access(subscriber)
    if not result.ok:
        return AttemptResult(FAILED, result.warning or "revoke failed")

    commit_decision(subscriber, decision, now=now)
    EXPIRATION_COUNT.labels(source="drain").inc()
    return AttemptResult(
        SUCCEEDED,
        followup=lambda: access.send_notification(subscriber, messages.expired(subscriber)),
    )


def _kick_suspended(operation: FailedOperation, now) -> AttemptResult:
    subscriber = _lock_subscriber(operation.subscriber_id)
    if subscriber.status != Subscriber.Status.SUSPENDED:
        return AttemptResult(OBSOLETE)

    result = access.revoke_access(subscriber)
    if not result.ok:
        return AttemptResult(FAILED, result.warning or "revoke failed")
    access.record_membership(subscriber, Subscriber.MembershipStatus.KICKED, now=now)
    return AttemptResult(SUCCEEDED)


def _grant_access(operation: FailedOperation, now) -> AttemptResult:
    subscriber = _lock_subscriber(operation.subscriber_id)
    if subscriber.status != Subscriber.Status.ACTIVE:
        return AttemptResult(OBSOLETE)

    result = access.issue_invite(subscriber)
    if not result.ok:
        return AttemptResult(FAILED, result.warning or "invite link could not be created")

    if operation.payload.get("event") == LifecycleEvent.REACTIVATE.value:
        message = messages.reactivated(subscriber, subscriber.invite_link)
    else:
        message = messages.access_granted(subscriber, subscriber.invite_link)
    return AttemptResult(SUCCEEDED, followup=lambda: access.send_notification(subscriber, message))


HANDLERS: Dict[str, Callable[[FailedOperation, object], AttemptResult]] = {
    FailedOperation.Action.KICK_EXPIRED: _kick_expired,
    FailedOperation.Action.KICK_SUSPENDED: _kick_suspended,
    FailedOperation.Action.GRANT_ACCESS: _grant_access,
}


def _record_failure(operation: FailedOperation, error: str, now) -> str:
    operation.attempts += 1
    operation.error_message = error[:2000]
    if operation.attempts >= operation.max_attempts:
        operation.status = FailedOperation.Status.MANUAL_INTERVENTION
        operation.processed_at = now
        operation.save(update_fields=["attempts", "error_message", "status", "processed_at", "updated_at"])
        logger.error(
            "Failed operation %s (%s for subscriber %s) needs manual intervention after %s attempts: %s",
            operation.pk,
            operation.action,
            operation.subscriber_id,
            operation.attempts,
            error,
        )
        record_audit(
            action="failed_operation.manual_intervention",
            resource_type="subscriber",
            resource_id=operation.subscriber_id,
            changes={"operation_id": operation.pk, "action": operation.action, "error": error},
            actor_label=DRAIN_ACTOR,
        )
        return MANUAL_INTERVENTION

    operation.next_retry_at = now + retry_delay(operation.attempts)
    operation.save(update_fields=["attempts", "error_message", "next_retry_at", "updated_at"])
    logger.warning(
        "Failed operation %s (%s) attempt %s/%s failed; next retry at %s",
        operation.pk,
        operation.action,
        operation.attempts,
        operation.max_attempts,
        operation.next_retry_at.isoformat(),
    )
    return FAILED


def _record_crash(pk, exc: Exception, now) -> None:
    with transaction.atomic():
        operation = (
            FailedOperation.objects.select_for_update(skip_locked=True)
            .filter(pk=pk, status=FailedOperation.Status.PENDING)
            .first()
        )
        if operation is not None:
            _record_failure(operation, f"{exc.__class__.__name__}: {exc}", now)


def due_operation_ids(*, now=None, limit: Optional[int] = None) -> List[int]:
    now = now or timezone.now()
    limit = limit or getattr(settings, "FAILED_OPERATION_BATCH_SIZE", 50)
    return list(
        FailedOperation.objects.filter(status=FailedOperation.Status.PENDING, next_retry_at__lte=now)
        .order_by("next_retry_at")
        .values_list("pk", flat=True)[:limit]
    )


def drain_failed_operations(*, now=None, limit: Optional[int] = None) -> Dict[str, int]:
    """Re-attempt due operations; success or obsolescence deletes the row."""

    now = now or timezone.now()
    operation_ids = due_operation_ids(now=now, limit=limit)
    stats = {
        "total": len(operation_ids),
        SUCCEEDED: 0,
        OBSOLETE: 0,
        FAILED: 0,
        MANUAL_INTERVENTION: 0,
        "skipped": 0,
        "errors": 0,
    }

    for pk in operation_ids:
        followup = None
        try:
            with transaction.atomic():
                operation = (
                    FailedOperation.objects.select_for_update(skip_locked=True)
                    .filter(pk=pk, status=FailedOperation.Status.PENDING)
                    .first()
                )
                if operation is None:
                    stats["skipped"] += 1
                    continue

                attempt = HANDLERS[operation.action](operation, now)
                if attempt.outcome in (SUCCEEDED, OBSOLETE):
                    logger.info(
                        "Failed operation %s (%s for subscriber %s) %s",
                        operation.pk,
                        operation.action,
                        operation.subscriber_id,
                        attempt.outcome,
                    )
                    action = operation.action
                    operation.delete()
                    outcome = attempt.outcome
                    followup = attempt.followup
                else:
                    action = operation.action
                    outcome = _record_failure(operation, attempt.error, now)
        except Exception as exc:
            logger.exception("Draining failed operation %s crashed", pk)
            stats["errors"] += 1
            _record_crash(pk, exc, now)
            continue

        DRAIN_OUTCOME_COUNT.labels(action=action, outcome=outcome).inc()
        stats[outcome] += 1
        if followup is not None:
            followup()

    logger.info("Failed-operation drain completed: %s", stats)
    return stats
