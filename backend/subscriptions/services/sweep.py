"""Scheduled expiry and reminder sweep.

Three passes run in order: the three-day reminder, the final (one-day)
reminder and the expire pass. Every subscriber is handled in its own
transaction under a ``skip_locked`` row lock, and its state is re-decided
from the locked row, so concurrent or repeated runs never act twice.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from django.db import transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from audit.services import record_audit
from subscriptions import messages
from subscriptions.exceptions import TransitionConflict
from subscriptions.models import ClientSubscription, FailedOperation, Subscriber
from subscriptions.observability.metrics import EXPIRATION_COUNT, REMINDER_SENT_COUNT
from subscriptions.services import access
from subscriptions.services.failed_operations import enqueue_failed_operation
from subscriptions.services.lifecycle import commit_decision, run_effects
from subscriptions.services.state_machine import (
    EXPIRED,
    FINAL_WINDOW,
    THREE_DAY_WINDOW,
    Effect,
    LifecycleEvent,
    SubscriberSnapshot,
    decide,
)

logger = logging.getLogger(__name__)

SWEEP_ACTOR = "celery.run_subscription_sweep"


def _lock_subscriber(pk) -> Optional[Subscriber]:
    return (
        Subscriber.objects.select_for_update(skip_locked=True, of=("self",))
        .select_related("project", "plan")
        .filter(pk=pk)
        .first()
    )


def _reminder_candidates(now, effect: str) -> List:
    queryset = Subscriber.objects.filter(status=Subscriber.Status.ACTIVE)
    if effect == Effect.REMIND_THREE_DAY:
        queryset = queryset.filter(
            expiry_reminder_sent=False,
            expiry_date__gt=now + FINAL_WINDOW,
            expiry_date__lte=now + THREE_DAY_WINDOW,
        )
    else:
        queryset = queryset.filter(
            final_reminder_sent=False,
            expiry_date__gt=now,
            expiry_date__lte=now + FINAL_WINDOW,
        )
    return list(queryset.order_by("expiry_date").values_list("pk", flat=True))


def _expire_candidates(now) -> List:
    # Flagged rows only come back through requeue_manual_operations.
    open_kick = FailedOperation.objects.filter(
        subscriber=OuterRef("pk"),
        action=FailedOperation.Action.KICK_EXPIRED,
        status__in=(FailedOperation.Status.PENDING, FailedOperation.Status.MANUAL_INTERVENTION),
    )
    queryset = Subscriber.objects.filter(
        ~Exists(open_kick),
        status=Subscriber.Status.ACTIVE,
        expiry_date__lt=now,
    )
    return list(queryset.order_by("expiry_date").values_list("pk", flat=True))


def run_reminder_pass(effect: str, *, now=None) -> Dict[str, int]:
    """Send one kind of reminder and set its flag only after delivery."""

    now = now or timezone.now()
    candidates = _reminder_candidates(now, effect)
    stats = {"total": len(candidates), "sent": 0, "failed": 0, "skipped": 0, "errors": 0}

    for pk in candidates:
        try:
            with transaction.atomic():
                subscriber = _lock_subscriber(pk)
                if subscriber is None:
                    stats["skipped"] += 1
                    continue
                if subscriber.status != Subscriber.Status.ACTIVE:
                    stats["skipped"] += 1
                    continue
                decision = decide(SubscriberSnapshot.from_subscriber(subscriber), LifecycleEvent.SWEEP, now=now)
                if decision.commit_after != effect:
                    stats["skipped"] += 1
                    continue

                report = run_effects(subscriber, decision)
                if not report.results[effect].ok:
                    stats["failed"] += 1
                    continue
                commit_decision(subscriber, decision, now=now)
        except TransitionConflict:
            stats["skipped"] += 1
            continue
        except Exception:
            logger.exception("Reminder %s failed for subscriber %s", effect, pk)
            stats["errors"] += 1
            continue

        REMINDER_SENT_COUNT.labels(kind=effect).inc()
        stats["sent"] += 1

    return stats


def run_expire_pass(*, now=None) -> Dict[str, int]:
    """Revoke, then expire. A failed revoke leaves the subscriber active and queued."""

    now = now or timezone.now()
    candidates = _expire_candidates(now)
    stats = {"total": len(candidates), "expired": 0, "queued": 0, "skipped": 0, "errors": 0}

    for pk in candidates:
        expired_subscriber = None
        try:
            with transaction.atomic():
                subscriber = _lock_subscriber(pk)
                if subscriber is None:
                    stats["skipped"] += 1
                    continue
                if subscriber.status != Subscriber.Status.ACTIVE:
                    stats["skipped"] += 1
                    continue
                decision = decide(SubscriberSnapshot.from_subscriber(subscriber), LifecycleEvent.SWEEP, now=now)
                if decision.next_status != EXPIRED:
                    stats["skipped"] += 1
                    continue

                result = access.revoke_access(subscriber)
                if not result.ok:
                    enqueue_failed_operation(
                        subscriber,
                        FailedOperation.Action.KICK_EXPIRED,
                        result.warning or "revoke failed",
                        payload={"expiry_date": subscriber.expiry_date},
                        now=now,
                    )
                    stats["queued"] += 1
                    continue

                commit_decision(subscriber, decision, now=now)
                expired_subscriber = subscriber
        except TransitionConflict:
            stats["skipped"] += 1
            continue
        except Exception:
            logger.exception("Expire pass failed for subscriber %s", pk)
            stats["errors"] += 1
            continue

        EXPIRATION_COUNT.labels(source="sweep").inc()
        stats["expired"] += 1
        access.send_notification(expired_subscriber, messages.expired(expired_subscriber))
        record_audit(
            action="subscriber.expire",
            resource_type="subscriber",
            resource_id=expired_subscriber.pk,
            changes={"before": {"status": "active"}, "after": {"status": EXPIRED}},
            actor_label=SWEEP_ACTOR,
        )

    return stats


def run_subscription_sweep(*, now=None) -> Dict[str, Dict[str, int]]:
    now = now or timezone.now()
    stats = {
        "three_day": run_reminder_pass(Effect.REMIND_THREE_DAY, now=now),
        "final": run_reminder_pass(Effect.REMIND_FINAL, now=now),
        "expire": run_expire_pass(now=now),
    }
    logger.info("Subscription sweep completed: %s", stats)
    return stats


def expire_client_subscriptions(*, now=None) -> Dict[str, int]:
    """Expire client platform tiers whose trial or paid period has ended."""

    now = now or timezone.now()
    trials = ClientSubscription.objects.filter(
        status=ClientSubscription.Status.TRIAL,
        trial_ends_at__lt=now,
    ).update(status=ClientSubscription.Status.EXPIRED, current_period_end=now, updated_at=now)
    periods = ClientSubscription.objects.filter(
        status=ClientSubscription.Status.ACTIVE,
        current_period_end__lt=now,
    ).update(status=ClientSubscription.Status.EXPIRED, updated_at=now)

    stats = {"trials_expired": trials, "periods_expired": periods}
    if trials or periods:
        logger.info("Client subscriptions expired: %s", stats)
    return stats
