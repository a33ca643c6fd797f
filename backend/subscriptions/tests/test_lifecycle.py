from datetime import timedelta

import pytest
from django.utils import timezone

from audit.models import AuditRecord
from subscriptions.exceptions import InvalidTransition, TransientGatewayError, TransitionConflict
from subscriptions.models import FailedOperation, Subscriber
from subscriptions.services import lifecycle
from subscriptions.services.drain import drain_failed_operations

pytestmark = pytest.mark.django_db


def test_approve_activates_and_sends_invite(gateway, make_subscriber, owner):
    subscriber = make_subscriber(status=Subscriber.Status.PENDING_APPROVAL, start_date=None, expiry_date=None)

    lifecycle.approve(subscriber, actor=owner)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert subscriber.approved_by == owner
    assert subscriber.invite_link == "https://t.me/+invite1"
    assert subscriber.expiry_date - subscriber.start_date == timedelta(days=30)
    message = gateway.sent[-1]
    assert "Payment Approved" in message["text"]
    assert message["reply_markup"]["inline_keyboard"][0][0]["url"] == subscriber.invite_link
    record = AuditRecord.objects.get(action="subscriber.approve")
    assert record.actor == owner
    assert record.changes["before"]["status"] == "pending_approval"
    assert record.changes["after"]["status"] == "active"


def test_concurrent_reject_makes_approve_conflict_without_side_effects(gateway, make_subscriber):
    subscriber = make_subscriber(status=Subscriber.Status.PENDING_APPROVAL, start_date=None, expiry_date=None)
    Subscriber.objects.filter(pk=subscriber.pk).update(status=Subscriber.Status.REJECTED)

    with pytest.raises(TransitionConflict):
        lifecycle.approve(subscriber)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.REJECTED
    assert gateway.sent == []
    assert gateway.invites == []
    assert not AuditRecord.objects.filter(action="subscriber.approve").exists()


def test_approve_active_subscriber_is_a_conflict_without_side_effects(gateway, make_subscriber):
    subscriber = make_subscriber()
    expiry = subscriber.expiry_date

    with pytest.raises(TransitionConflict):
        lifecycle.approve(subscriber)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert subscriber.expiry_date == expiry
    assert gateway.sent == []
    assert gateway.invites == []
    assert not AuditRecord.objects.filter(action="subscriber.approve").exists()


def test_reject_after_approval_is_a_conflict(gateway, make_subscriber):
    subscriber = make_subscriber()

    with pytest.raises(TransitionConflict):
        lifecycle.reject(subscriber, reason="late")

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert subscriber.rejection_reason == ""
    assert gateway.sent == []


def test_reactivate_active_subscriber_is_invalid(gateway, make_subscriber):
    with pytest.raises(InvalidTransition):
        lifecycle.reactivate(make_subscriber())


def test_failed_invite_on_approve_is_queued(gateway, make_subscriber):
    gateway.invite_ok = False
    subscriber = make_subscriber(status=Subscriber.Status.AWAITING_PROOF, start_date=None, expiry_date=None)

    lifecycle.approve(subscriber)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    operation = FailedOperation.objects.get(subscriber=subscriber)
    assert operation.action == FailedOperation.Action.GRANT_ACCESS
    assert operation.payload == {"event": "approve"}
    assert "Could not generate invite link" in gateway.sent[-1]["text"]


def test_reject_stores_reason_and_notifies(gateway, make_subscriber):
    subscriber = make_subscriber(status=Subscriber.Status.PENDING_APPROVAL, start_date=None, expiry_date=None)

    lifecycle.reject(subscriber, reason="Screenshot unreadable")

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.REJECTED
    assert subscriber.rejection_reason == "Screenshot unreadable"
    assert "Screenshot unreadable" in gateway.sent[-1]["text"]


def test_extend_uses_later_of_expiry_and_now_and_resets_reminders(gateway, make_subscriber):
    expiry = timezone.now() + timedelta(days=2)
    subscriber = make_subscriber(expiry_date=expiry, expiry_reminder_sent=True, final_reminder_sent=False)

    lifecycle.extend(subscriber, 30)

    subscriber.refresh_from_db()
    assert subscriber.expiry_date == expiry + timedelta(days=30)
    assert subscriber.expiry_reminder_sent is False
    assert subscriber.final_reminder_sent is False
    assert gateway.invites == []
    assert "Subscription Extended" in gateway.sent[-1]["text"]


def test_extend_reissues_invite_when_member_left(gateway, make_subscriber):
    gateway.member_status = "left"
    subscriber = make_subscriber(expiry_date=timezone.now() - timedelta(minutes=30))
    before = timezone.now()

    lifecycle.extend(subscriber, 7)

    subscriber.refresh_from_db()
    assert subscriber.expiry_date >= before + timedelta(days=7)
    assert subscriber.channel_membership_status == "left"
    assert subscriber.invite_link == "https://t.me/+invite1"
    assert gateway.sent[-1]["reply_markup"] is not None


def test_extend_with_stale_expiry_conflicts(gateway, make_subscriber):
    subscriber = make_subscriber()
    Subscriber.objects.filter(pk=subscriber.pk).update(expiry_date=subscriber.expiry_date + timedelta(days=30))

    with pytest.raises(TransitionConflict):
        lifecycle.extend(subscriber, 30)

    assert gateway.sent == []


def test_suspend_with_failed_revoke_is_drained_later(gateway, make_subscriber, owner):
    gateway.revoke_ok = False
    subscriber = make_subscriber(channel_joined=True)

    lifecycle.suspend(subscriber, reason="chargeback", actor=owner)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.SUSPENDED
    assert subscriber.suspended_by == owner
    assert subscriber.suspended_at is not None
    operation = FailedOperation.objects.get(subscriber=subscriber)
    assert operation.action == FailedOperation.Action.KICK_SUSPENDED
    assert "Subscription Suspended" in gateway.sent[-1]["text"]

    gateway.revoke_ok = True
    stats = drain_failed_operations(now=operation.next_retry_at + timedelta(seconds=1))

    subscriber.refresh_from_db()
    assert stats["succeeded"] == 1
    assert subscriber.status == Subscriber.Status.SUSPENDED
    assert subscriber.channel_membership_status == Subscriber.MembershipStatus.KICKED
    assert FailedOperation.objects.count() == 0


def test_reactivate_restores_access_with_new_invite(gateway, make_subscriber):
    subscriber = make_subscriber(
        status=Subscriber.Status.SUSPENDED,
        suspended_at=timezone.now(),
        rejection_reason="chargeback",
        invite_link="https://t.me/+old",
    )

    lifecycle.reactivate(subscriber, duration_days=14)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert subscriber.suspended_at is None
    assert subscriber.rejection_reason == ""
    assert subscriber.invite_link == "https://t.me/+invite1"
    assert subscriber.expiry_date - subscriber.start_date == timedelta(days=14)
    assert "Reactivated" in gateway.sent[-1]["text"]


def test_submit_payment_proof_moves_to_pending_approval(gateway, make_subscriber, plan):
    subscriber = make_subscriber(status=Subscriber.Status.AWAITING_PROOF, plan=None, start_date=None, expiry_date=None)

    lifecycle.submit_payment_proof(subscriber, "https://files.example.com/receipt.png", plan=plan)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.PENDING_APPROVAL
    assert subscriber.payment_method == Subscriber.PaymentMethod.MANUAL
    assert subscriber.payment_proof_url == "https://files.example.com/receipt.png"
    assert subscriber.plan == plan


def test_create_subscriber_with_activation(gateway, project, plan, owner):
    subscriber = lifecycle.create_subscriber(project, 555, username="ada", plan=plan, activate=True, actor=owner)

    subscriber.refresh_from_db()
    assert subscriber.status == Subscriber.Status.ACTIVE
    assert subscriber.payment_method == Subscriber.PaymentMethod.ADMIN
    assert subscriber.invite_link
    assert AuditRecord.objects.filter(action="subscriber.create").count() == 1


def test_refresh_membership_records_first_join(gateway, make_subscriber):
    subscriber = make_subscriber(channel_joined=False)

    lifecycle.refresh_membership(subscriber)

    subscriber.refresh_from_db()
    assert subscriber.channel_joined is True
    assert subscriber.channel_joined_at is not None
    assert subscriber.channel_membership_status == "member"
    assert subscriber.last_membership_check is not None
    assert subscriber.status == Subscriber.Status.ACTIVE


def test_refresh_memberships_continues_past_failed_lookup(gateway, make_subscriber, monkeypatch):
    failing = make_subscriber()
    member = make_subscriber()
    lookup = gateway.get_member_status

    def flaky(channel_id, user_id):
        if user_id == failing.telegram_user_id:
            raise TransientGatewayError("getChatMember timed out")
        return lookup(channel_id, user_id)

    monkeypatch.setattr(gateway, "get_member_status", flaky)

    results = lifecycle.refresh_memberships([failing, member])

    assert [row["status"] for row in results] == ["unknown", "member"]
    assert [row["is_member"] for row in results] == [False, True]
    failing.refresh_from_db()
    assert failing.channel_membership_status == "unknown"


def test_start_checkout_attaches_plan(monkeypatch, make_subscriber, plan):
    from subscriptions.services import stripe_payments

    calls = []

    def fake_session(subscriber, chosen_plan):
        calls.append((subscriber.pk, chosen_plan.pk))
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1"}

    monkeypatch.setattr(stripe_payments, "create_subscriber_checkout_session", fake_session)
    subscriber = make_subscriber(status=Subscriber.Status.EXPIRED, plan=None)

    session = lifecycle.start_checkout(subscriber, plan)

    subscriber.refresh_from_db()
    assert session["id"] == "cs_test_1"
    assert calls == [(subscriber.pk, plan.pk)]
    assert subscriber.status == Subscriber.Status.PENDING_PAYMENT
    assert subscriber.plan == plan


def test_start_checkout_refused_for_suspended(make_subscriber, plan):
    subscriber = make_subscriber(status=Subscriber.Status.SUSPENDED)

    with pytest.raises(InvalidTransition):
        lifecycle.start_checkout(subscriber, plan)
