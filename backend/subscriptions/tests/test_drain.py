from datetime import timedelta

import pytest
from django.utils import timezone

from audit.models import AuditRecord
from subscriptions.models import FailedOperation, Subscriber
from subscriptions.services.drain import drain_failed_operations
from subscriptions.services.failed_operations import enqueue_failed_operation, requeue_manual_operations

pytestmark = pytest.mark.django_db


def _queue(subscriber, action, *, now, attempts=0, due=True, payload=None):
    return FailedOperation.objects.create(
        subscriber=subscriber,
        action=action,
        payload=payload or {},
        error_message="banChatMember:1 failed after 3 attempts",
        attempts=attempts,
        next_retry_at=now - timedelta(minutes=1) if due else now + timedelta(minutes=30),
    )


def test_kick_expired_success_expires_and_deletes_row(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(expiry_date=now - timedelta(hours=2))
    operation = _queue(subscriber, FailedOperation.Action.KICK_EXPIRED, now=now)

    stats = drain_failed_operations(now=now)

    subscriber.refresh_from_db()
    assert stats["succeeded"] == 1
    assert subscriber.status == Subscriber.Status.EXPIRED
    assert not FailedOperation.objects.filter(pk=operation.pk).exists()
    assert len(gateway.revoked) == 1
    assert "Subscription Expired" in gateway.texts_to(subscriber.telegram_user_id)[0]


def test_kick_expired_for_renewed_subscriber_is_obsolete(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(expiry_date=now + timedelta(days=30))
    operation = _queue(subscriber, FailedOperation.Action.KICK_EXPIRED, now=now)

    stats = drain_failed_operations(now=now)

    subscriber.refresh_from_db()
    assert stats["obsolete"] == 1
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert gateway.revoked == []
    assert not FailedOperation.objects.filter(pk=operation.pk).exists()


def test_failure_reschedules_with_exponential_backoff(gateway, make_subscriber):
    gateway.revoke_ok = False
    now = timezone.now()
    subscriber = make_subscriber(expiry_date=now - timedelta(hours=2))
    operation = _queue(subscriber, FailedOperation.Action.KICK_EXPIRED, now=now, attempts=1)

    stats = drain_failed_operations(now=now)

    operation.refresh_from_db()
    subscriber.refresh_from_db()
    assert stats["failed"] == 1
    assert operation.attempts == 2
    assert operation.next_retry_at == now + timedelta(minutes=4)
    assert operation.status == FailedOperation.Status.PENDING
    assert subscriber.status == Subscriber.Status.ACTIVE


def test_reaching_max_attempts_flags_manual_intervention(gateway, make_subscriber):
    gateway.revoke_ok = False
    now = timezone.now()
    subscriber = make_subscriber(expiry_date=now - timedelta(hours=2))
    operation = _queue(subscriber, FailedOperation.Action.KICK_EXPIRED, now=now, attempts=4)

    stats = drain_failed_operations(now=now)

    operation.refresh_from_db()
    assert stats["manual_intervention"] == 1
    assert operation.status == FailedOperation.Status.MANUAL_INTERVENTION
    assert operation.attempts == 5
    assert operation.processed_at == now
    assert AuditRecord.objects.filter(action="failed_operation.manual_intervention").count() == 1

    # Flagged rows are no longer picked up.
    assert drain_failed_operations(now=now + timedelta(hours=1))["total"] == 0


def test_rows_not_yet_due_are_left_alone(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(expiry_date=now - timedelta(hours=2))
    _queue(subscriber, FailedOperation.Action.KICK_EXPIRED, now=now, due=False)

    stats = drain_failed_operations(now=now)

    assert stats["total"] == 0
    assert gateway.revoked == []


def test_kick_suspended_records_membership(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(status=Subscriber.Status.SUSPENDED, channel_joined=True)
    _queue(subscriber, FailedOperation.Action.KICK_SUSPENDED, now=now)

    stats = drain_failed_operations(now=now)

    subscriber.refresh_from_db()
    assert stats["succeeded"] == 1
    assert subscriber.channel_membership_status == Subscriber.MembershipStatus.KICKED
    assert subscriber.channel_joined is False
    assert FailedOperation.objects.count() == 0


def test_kick_suspended_after_reactivation_is_obsolete(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber()
    _queue(subscriber, FailedOperation.Action.KICK_SUSPENDED, now=now)

    stats = drain_failed_operations(now=now)

    assert stats["obsolete"] == 1
    assert gateway.revoked == []


def test_grant_access_issues_invite_and_notifies(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(invite_link="")
    _queue(subscriber, FailedOperation.Action.GRANT_ACCESS, now=now, payload={"event": "payment"})

    stats = drain_failed_operations(now=now)

    subscriber.refresh_from_db()
    assert stats["succeeded"] == 1
    assert subscriber.invite_link == "https://t.me/+invite1"
    sent = gateway.sent[-1]
    assert sent["chat_id"] == subscriber.telegram_user_id
    assert sent["reply_markup"]["inline_keyboard"][0][0]["url"] == "https://t.me/+invite1"


def test_grant_access_for_inactive_subscriber_is_obsolete(gateway, make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber(status=Subscriber.Status.EXPIRED)
    _queue(subscriber, FailedOperation.Action.GRANT_ACCESS, now=now)

    stats = drain_failed_operations(now=now)

    assert stats["obsolete"] == 1
    assert gateway.invites == []


def test_enqueue_keeps_one_pending_row_per_action(make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber()

    first = enqueue_failed_operation(subscriber, FailedOperation.Action.KICK_EXPIRED, "timeout", now=now)
    second = enqueue_failed_operation(
        subscriber, FailedOperation.Action.KICK_EXPIRED, "forbidden", now=now + timedelta(minutes=1)
    )

    assert first.pk == second.pk
    assert FailedOperation.objects.count() == 1
    first.refresh_from_db()
    assert first.error_message == "forbidden"
    assert first.next_retry_at == now + timedelta(minutes=5)


def test_requeue_manual_operations_resets_attempts(make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber()
    flagged = FailedOperation.objects.create(
        subscriber=subscriber,
        action=FailedOperation.Action.KICK_EXPIRED,
        attempts=5,
        status=FailedOperation.Status.MANUAL_INTERVENTION,
        next_retry_at=now - timedelta(days=1),
        processed_at=now - timedelta(days=1),
    )

    stats = requeue_manual_operations(now=now)

    flagged.refresh_from_db()
    assert stats == {"requeued": 1, "skipped": 0}
    assert flagged.status == FailedOperation.Status.PENDING
    assert flagged.attempts == 0
    assert flagged.next_retry_at == now
    assert flagged.processed_at is None


def test_requeue_skips_when_pending_row_exists(make_subscriber):
    now = timezone.now()
    subscriber = make_subscriber()
    FailedOperation.objects.create(
        subscriber=subscriber,
        action=FailedOperation.Action.KICK_EXPIRED,
        next_retry_at=now,
    )
    FailedOperation.objects.create(
        subscriber=subscriber,
        action=FailedOperation.Action.KICK_EXPIRED,
        status=FailedOperation.Status.MANUAL_INTERVENTION,
        attempts=5,
        next_retry_at=now,
    )

    assert requeue_manual_operations(now=now) == {"requeued": 0, "skipped": 1}
