from datetime import datetime, timedelta, timezone

import pytest

from subscriptions.exceptions import InvalidTransition
from subscriptions.services.state_machine import (
    ACTIVE,
    EXPIRED,
    PENDING_APPROVAL,
    SUSPENDED,
    Effect,
    LifecycleEvent,
    SubscriberSnapshot,
    decide,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def active(expiry, **kwargs):
    return SubscriberSnapshot(status=ACTIVE, expiry_date=expiry, **kwargs)


def test_sweep_outside_reminder_windows_is_noop():
    decision = decide(active(NOW + timedelta(days=10)), LifecycleEvent.SWEEP, now=NOW)

    assert decision.is_noop
    assert decision.next_status == ACTIVE


def test_sweep_three_day_window_sends_first_reminder():
    decision = decide(active(NOW + timedelta(days=2, hours=12)), LifecycleEvent.SWEEP, now=NOW)

    assert decision.effects == (Effect.REMIND_THREE_DAY,)
    assert decision.changes == {"expiry_reminder_sent": True}
    assert decision.commit_after == Effect.REMIND_THREE_DAY
    assert decision.context["days_left"] == 3


def test_sweep_three_day_reminder_is_not_repeated():
    snapshot = active(NOW + timedelta(days=2), expiry_reminder_sent=True)

    assert decide(snapshot, LifecycleEvent.SWEEP, now=NOW).is_noop


def test_sweep_final_window_sets_both_flags():
    decision = decide(active(NOW + timedelta(hours=20)), LifecycleEvent.SWEEP, now=NOW)

    assert decision.effects == (Effect.REMIND_FINAL,)
    assert decision.changes == {"expiry_reminder_sent": True, "final_reminder_sent": True}


def test_sweep_at_exact_expiry_sends_nothing():
    decision = decide(active(NOW), LifecycleEvent.SWEEP, now=NOW)

    assert decision.is_noop
    assert decision.next_status == ACTIVE


def test_sweep_lapsed_subscriber_expires_only_after_revoke():
    decision = decide(active(NOW - timedelta(minutes=1)), LifecycleEvent.SWEEP, now=NOW)

    assert decision.next_status == EXPIRED
    assert decision.effects == (Effect.REVOKE_ACCESS, Effect.NOTIFY_EXPIRED)
    assert decision.commit_after == Effect.REVOKE_ACCESS
    assert decision.allowed_from == frozenset({ACTIVE})


def test_extend_anchors_on_future_expiry_and_resets_flags():
    expiry = NOW + timedelta(days=2)
    snapshot = active(expiry, expiry_reminder_sent=True, final_reminder_sent=True)

    decision = decide(snapshot, LifecycleEvent.EXTEND, now=NOW, duration_days=30, observed_membership="member")

    assert decision.changes["expiry_date"] == expiry + timedelta(days=30)
    assert decision.changes["expiry_reminder_sent"] is False
    assert decision.changes["final_reminder_sent"] is False
    assert decision.effects == (Effect.NOTIFY_EXTENDED,)


def test_extend_anchors_on_now_when_expiry_has_passed():
    decision = decide(active(NOW - timedelta(days=3)), LifecycleEvent.EXTEND, now=NOW, duration_days=10,
                      observed_membership="left")

    assert decision.changes["expiry_date"] == NOW + timedelta(days=10)
    assert decision.effects == (Effect.ISSUE_CREDENTIAL, Effect.NOTIFY_EXTENDED)


def test_extend_without_observation_reconciles_membership_first():
    decision = decide(active(NOW + timedelta(days=1)), LifecycleEvent.EXTEND, now=NOW, duration_days=5)

    assert decision.effects == (Effect.RECONCILE_MEMBERSHIP, Effect.NOTIFY_EXTENDED)


def test_extend_requires_positive_duration():
    with pytest.raises(ValueError):
        decide(active(NOW), LifecycleEvent.EXTEND, now=NOW, duration_days=0)


def test_approve_activates_and_grants_access():
    snapshot = SubscriberSnapshot(status=PENDING_APPROVAL)

    decision = decide(snapshot, LifecycleEvent.APPROVE, now=NOW, duration_days=30)

    assert decision.next_status == ACTIVE
    assert decision.changes["start_date"] == NOW
    assert decision.changes["expiry_date"] == NOW + timedelta(days=30)
    assert decision.effects == (Effect.GRANT_ACCESS,)


@pytest.mark.parametrize("event", [LifecycleEvent.APPROVE, LifecycleEvent.REJECT, LifecycleEvent.SUBMIT_PROOF])
def test_events_not_in_table_raise(event):
    with pytest.raises(InvalidTransition):
        decide(active(NOW), event, now=NOW, duration_days=30)


def test_payment_for_suspended_subscriber_is_invalid():
    with pytest.raises(InvalidTransition):
        decide(SubscriberSnapshot(status=SUSPENDED), LifecycleEvent.PAYMENT, now=NOW, duration_days=30)


def test_payment_extends_active_subscriber_from_current_expiry():
    expiry = NOW + timedelta(days=4)
    snapshot = active(expiry, invite_link="https://t.me/+abc", expiry_reminder_sent=True)

    decision = decide(snapshot, LifecycleEvent.PAYMENT, now=NOW, duration_days=30)

    assert decision.changes["expiry_date"] == expiry + timedelta(days=30)
    assert decision.changes["expiry_reminder_sent"] is False
    assert decision.effects == (Effect.NOTIFY_PAYMENT,)
    assert decision.context == {"extension": True}
    assert decision.allowed_from == frozenset({ACTIVE})


def test_payment_for_expired_subscriber_starts_new_period_with_credential():
    snapshot = SubscriberSnapshot(status=EXPIRED, expiry_date=NOW - timedelta(days=10))

    decision = decide(snapshot, LifecycleEvent.PAYMENT, now=NOW, duration_days=30)

    assert decision.changes["start_date"] == NOW
    assert decision.changes["expiry_date"] == NOW + timedelta(days=30)
    assert decision.effects == (Effect.ISSUE_CREDENTIAL, Effect.NOTIFY_PAYMENT)
    assert decision.context == {"extension": False}


def test_suspend_revokes_then_notifies():
    decision = decide(active(NOW + timedelta(days=9)), LifecycleEvent.SUSPEND, now=NOW, reason="chargeback")

    assert decision.next_status == SUSPENDED
    assert decision.changes["suspended_at"] == NOW
    assert decision.changes["rejection_reason"] == "chargeback"
    assert decision.effects == (Effect.REVOKE_ACCESS, Effect.NOTIFY_SUSPENDED)


def test_reactivate_clears_suspension_and_old_invite():
    snapshot = SubscriberSnapshot(status=SUSPENDED, invite_link="https://t.me/+old")

    decision = decide(snapshot, LifecycleEvent.REACTIVATE, now=NOW, duration_days=14)

    assert decision.changes["suspended_at"] is None
    assert decision.changes["invite_link"] == ""
    assert decision.changes["expiry_date"] == NOW + timedelta(days=14)
    assert decision.effects == (Effect.GRANT_ACCESS,)
