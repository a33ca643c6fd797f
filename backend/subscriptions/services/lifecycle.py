"""Apply state-machine decisions to subscribers and run their side effects.

Every transition is persisted with a conditional update matching the
decision's ``allowed_from`` statuses. When no row matches, the subscriber
moved underneath us; ``TransitionConflict`` is raised and no side effect
runs.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from audit.services import record_audit
from projects.models import Plan, Project
from subscriptions import messages
from subscriptions.exceptions import InvalidTransition, TransitionConflict
from subscriptions.models import FailedOperation, Subscriber
from subscriptions.observability.logging import log_subscription_event
from subscriptions.services import access, stripe_payments
from subscriptions.services.failed_operations import enqueue_failed_operation
from subscriptions.services.state_machine import (
    TRANSITIONS,
    Decision,
    Effect,
    LifecycleEvent,
    SubscriberSnapshot,
    decide,
)
from subscriptions.services.telegram_gateway import GatewayResult, TelegramGateway

logger = logging.getLogger(__name__)

# Review decisions on a subscriber no longer under review report a conflict.
REVIEW_EVENTS = frozenset({LifecycleEvent.APPROVE, LifecycleEvent.REJECT})


@dataclass
class EffectReport:
    """What happened to each effect of an applied decision."""

    results: Dict[str, GatewayResult] = field(default_factory=dict)
    queued: Dict[str, int] = field(default_factory=dict)
    membership: Optional[str] = None

    @property
    def all_ok(self) -> bool:
        return all(result.ok for result in self.results.values())


def plan_duration(subscriber: Subscriber, plan: Optional[Plan] = None) -> int:
    plan = plan or subscriber.plan
    if plan is not None and plan.duration_days:
        return int(plan.duration_days)
    return int(getattr(settings, "DEFAULT_PLAN_DURATION_DAYS", 30))


def _audit_value(value: Any) -> Any:
    if hasattr(value, "pk"):
        return value.pk
    return value


def commit_decision(subscriber: Subscriber, decision: Decision, *, extra_changes: Optional[Dict[str, Any]] = None,
                    now=None) -> Subscriber:
    """Persist ``decision`` with a conditional update and mirror it on ``subscriber``.

    Extensions additionally require the stored ``expiry_date`` to still be
    the one the decision was computed from.
    """

    now = now or timezone.now()
    changes = dict(decision.changes)
    if extra_changes:
        changes.update(extra_changes)
    changes["status"] = decision.next_status
    changes["updated_at"] = now

    queryset = Subscriber.objects.filter(pk=subscriber.pk, status__in=decision.allowed_from)
    if decision.event is LifecycleEvent.EXTEND:
        if subscriber.expiry_date is None:
            queryset = queryset.filter(expiry_date__isnull=True)
        else:
            queryset = queryset.filter(expiry_date=subscriber.expiry_date)

    updated = queryset.update(**changes)
    if not updated:
        logger.warning(
            "Transition %s for subscriber %s abandoned: status left %s",
            decision.event.value,
            subscriber.pk,
            sorted(decision.allowed_from),
        )
        raise TransitionConflict(subscriber.pk, decision.event.value, decision.allowed_from)

    for name, value in changes.items():
        setattr(subscriber, name, value)
    return subscriber


def _notify(subscriber: Subscriber, message: messages.Message, report: EffectReport, key: str,
            gateway: Optional[TelegramGateway]) -> None:
    report.results[key] = access.send_notification(subscriber, message, gateway=gateway)


def _issue_credential(subscriber: Subscriber, decision: Decision, report: EffectReport,
                      gateway: Optional[TelegramGateway], key: str) -> bool:
    result = access.issue_invite(subscriber, gateway=gateway)
    report.results[key] = result
    if not result.ok:
        operation = enqueue_failed_operation(
            subscriber,
            FailedOperation.Action.GRANT_ACCESS,
            result.warning or "invite link could not be created",
            payload={"event": decision.event.value},
        )
        report.queued[key] = operation.pk
    return result.ok


def run_effects(subscriber: Subscriber, decision: Decision, *, gateway: Optional[TelegramGateway] = None,
                skip: tuple = ()) -> EffectReport:
    """Execute the effects of a committed decision in order.

    Critical effects that fail are queued as FailedOperation rows; failed
    notifications are logged and otherwise ignored.
    """

    report = EffectReport()
    for effect in decision.effects:
        if effect in skip:
            continue

        if effect == Effect.GRANT_ACCESS:
            issued = _issue_credential(subscriber, decision, report, gateway, effect)
            link = subscriber.invite_link if issued else ""
            if decision.event is LifecycleEvent.REACTIVATE:
                message = messages.reactivated(subscriber, link)
            else:
                message = messages.access_granted(subscriber, link)
            _notify(subscriber, message, report, "notify_access", gateway)

        elif effect == Effect.ISSUE_CREDENTIAL:
            _issue_credential(subscriber, decision, report, gateway, effect)

        elif effect == Effect.RECONCILE_MEMBERSHIP:
            report.membership = access.observe_membership(subscriber, gateway=gateway)
            if access.is_absent(report.membership):
                _issue_credential(subscriber, decision, report, gateway, Effect.ISSUE_CREDENTIAL)

        elif effect == Effect.REVOKE_ACCESS:
            result = access.revoke_access(subscriber, gateway=gateway)
            report.results[effect] = result
            if result.ok:
                access.record_membership(subscriber, Subscriber.MembershipStatus.KICKED)
            else:
                action = (
                    FailedOperation.Action.KICK_SUSPENDED
                    if decision.event is LifecycleEvent.SUSPEND
                    else FailedOperation.Action.KICK_EXPIRED
                )
                operation = enqueue_failed_operation(subscriber, action, result.warning or "revoke failed")
                report.queued[effect] = operation.pk

        elif effect == Effect.NOTIFY_EXTENDED:
            message = messages.extended(subscriber)
            if Effect.ISSUE_CREDENTIAL in report.results and report.results[Effect.ISSUE_CREDENTIAL].ok:
                message = (message[0], messages.access_granted(subscriber, subscriber.invite_link)[1])
            _notify(subscriber, message, report, effect, gateway)

        elif effect == Effect.NOTIFY_REJECTED:
            _notify(subscriber, messages.rejected(subscriber, subscriber.rejection_reason), report, effect, gateway)

        elif effect == Effect.NOTIFY_SUSPENDED:
            _notify(subscriber, messages.suspended(subscriber, subscriber.rejection_reason), report, effect, gateway)

        elif effect == Effect.NOTIFY_EXPIRED:
            _notify(subscriber, messages.expired(subscriber), report, effect, gateway)

        elif effect == Effect.NOTIFY_PAYMENT:
            issued = report.results.get(Effect.ISSUE_CREDENTIAL)
            link = subscriber.invite_link if issued is not None and issued.ok else ""
            message = messages.payment_received(subscriber, link, extension=decision.context.get("extension", False))
            _notify(subscriber, message, report, effect, gateway)

        elif effect == Effect.REMIND_THREE_DAY:
            days_left = decision.context.get("days_left", 3)
            _notify(subscriber, messages.expiring_soon(subscriber, days_left), report, effect, gateway)

        elif effect == Effect.REMIND_FINAL:
            _notify(subscriber, messages.final_warning(subscriber), report, effect, gateway)

        else:  # pragma: no cover - guarded by the transition table
            raise ValueError(f"Unknown effect {effect}")

    return report


def _transition(
    subscriber: Subscriber,
    event: LifecycleEvent,
    *,
    actor=None,
    actor_label: str = "",
    duration_days: Optional[int] = None,
    reason: str = "",
    extra_changes: Optional[Dict[str, Any]] = None,
    gateway: Optional[TelegramGateway] = None,
) -> Subscriber:
    now = timezone.now()
    snapshot = SubscriberSnapshot.from_subscriber(subscriber)
    try:
        decision = decide(snapshot, event, now=now, duration_days=duration_days, reason=reason)
    except InvalidTransition:
        if event not in REVIEW_EVENTS:
            raise
        logger.warning(
            "%s for subscriber %s ignored: status is %s",
            event.value,
            subscriber.pk,
            snapshot.status,
        )
        raise TransitionConflict(subscriber.pk, event.value, TRANSITIONS[event]) from None

    before = {"status": snapshot.status, "expiry_date": snapshot.expiry_date}
    commit_decision(subscriber, decision, extra_changes=extra_changes, now=now)

    report = run_effects(subscriber, decision, gateway=gateway)

    after = {name: _audit_value(value) for name, value in decision.changes.items()}
    after["status"] = decision.next_status
    record_audit(
        action=f"subscriber.{event.value}",
        resource_type="subscriber",
        resource_id=subscriber.pk,
        changes={"before": before, "after": after, "queued": report.queued},
        actor=actor,
        actor_label=actor_label,
    )
    log_subscription_event(
        message=f"subscriber.{event.value}",
        subscriber_id=subscriber.pk,
        project_id=subscriber.project_id,
        actor=actor_label or (f"user:{actor.pk}" if actor is not None else None),
        extra={"status": decision.next_status, "queued": sorted(report.queued)},
    )
    return subscriber


def approve(subscriber: Subscriber, *, actor=None, duration_days: Optional[int] = None,
            gateway: Optional[TelegramGateway] = None) -> Subscriber:
    """Activate a subscriber whose manual payment was verified."""

    extra = {"approved_by": actor} if actor is not None and actor.is_authenticated else None
    return _transition(
        subscriber,
        LifecycleEvent.APPROVE,
        actor=actor,
        duration_days=duration_days or plan_duration(subscriber),
        extra_changes=extra,
        gateway=gateway,
    )


def reject(subscriber: Subscriber, *, reason: str = "", actor=None,
           gateway: Optional[TelegramGateway] = None) -> Subscriber:
    return _transition(subscriber, LifecycleEvent.REJECT, actor=actor, reason=reason, gateway=gateway)


def extend(subscriber: Subscriber, days: int, *, actor=None, gateway: Optional[TelegramGateway] = None) -> Subscriber:
    """Extend an active subscription by ``days`` from ``max(expiry, now)``."""

    return _transition(subscriber, LifecycleEvent.EXTEND, actor=actor, duration_days=days, gateway=gateway)


def reactivate(subscriber: Subscriber, *, actor=None, duration_days: Optional[int] = None,
               gateway: Optional[TelegramGateway] = None) -> Subscriber:
    """Restore access for a suspended, rejected or expired subscriber with a fresh invite."""

    return _transition(
        subscriber,
        LifecycleEvent.REACTIVATE,
        actor=actor,
        duration_days=duration_days or plan_duration(subscriber),
        gateway=gateway,
    )


def suspend(subscriber: Subscriber, *, reason: str = "", actor=None,
            gateway: Optional[TelegramGateway] = None) -> Subscriber:
    extra = {"suspended_by": actor} if actor is not None and actor.is_authenticated else None
    return _transition(
        subscriber,
        LifecycleEvent.SUSPEND,
        actor=actor,
        reason=reason,
        extra_changes=extra,
        gateway=gateway,
    )


def submit_payment_proof(subscriber: Subscriber, proof_url: str, *, plan: Optional[Plan] = None,
                         actor=None) -> Subscriber:
    extra: Dict[str, Any] = {"payment_proof_url": proof_url}
    if plan is not None:
        extra["plan"] = plan
    return _transition(
        subscriber,
        LifecycleEvent.SUBMIT_PROOF,
        actor=actor,
        actor_label="" if actor is not None else "subscriber",
        extra_changes=extra,
    )


def create_subscriber(
    project: Project,
    telegram_user_id: int,
    *,
    username: str = "",
    first_name: str = "",
    plan: Optional[Plan] = None,
    activate: bool = False,
    notes: str = "",
    actor=None,
    gateway: Optional[TelegramGateway] = None,
) -> Subscriber:
    """Manual creation; ``activate`` grants access immediately as an admin approval."""

    with transaction.atomic():
        subscriber = Subscriber.objects.create(
            project=project,
            plan=plan,
            telegram_user_id=telegram_user_id,
            username=username,
            first_name=first_name,
            notes=notes,
            status=Subscriber.Status.PENDING_APPROVAL,
            payment_method=Subscriber.PaymentMethod.ADMIN if activate else "",
        )
    record_audit(
        action="subscriber.create",
        resource_type="subscriber",
        resource_id=subscriber.pk,
        changes={"after": {"status": subscriber.status, "telegram_user_id": telegram_user_id}},
        actor=actor,
    )
    if activate:
        approve(subscriber, actor=actor, gateway=gateway)
    return subscriber


def start_checkout(subscriber: Subscriber, plan: Plan, *, actor=None) -> Dict[str, Any]:
    """Open a Stripe Checkout session for ``plan``.

    Active subscribers keep their status (the payment extends them); any
    other payable subscriber waits in ``pending_payment`` with the plan
    attached. Suspended subscribers cannot pay their way back in.
    """

    if plan.project_id != subscriber.project_id:
        raise ValueError("Plan belongs to a different project.")
    if subscriber.status not in TRANSITIONS[LifecycleEvent.PAYMENT]:
        raise InvalidTransition(LifecycleEvent.PAYMENT.value, subscriber.status)

    session = stripe_payments.create_subscriber_checkout_session(subscriber, plan)

    changes: Dict[str, Any] = {"plan": plan, "updated_at": timezone.now()}
    allowed = TRANSITIONS[LifecycleEvent.PAYMENT]
    if subscriber.status != Subscriber.Status.ACTIVE:
        changes["status"] = Subscriber.Status.PENDING_PAYMENT
        allowed = allowed - {Subscriber.Status.ACTIVE}
    updated = Subscriber.objects.filter(pk=subscriber.pk, status__in=allowed).update(**changes)
    if not updated:
        raise TransitionConflict(subscriber.pk, "checkout", allowed)
    before_status = subscriber.status
    for name, value in changes.items():
        setattr(subscriber, name, value)

    record_audit(
        action="subscriber.checkout",
        resource_type="subscriber",
        resource_id=subscriber.pk,
        changes={
            "before": {"status": before_status},
            "after": {"status": subscriber.status, "plan": plan.pk},
            "session_id": session.get("id"),
        },
        actor=actor,
    )
    return session


def refresh_membership(subscriber: Subscriber, *, gateway: Optional[TelegramGateway] = None) -> Subscriber:
    """Record the current channel membership observation for ``subscriber``."""

    access.observe_membership(subscriber, gateway=gateway)
    return subscriber


def refresh_memberships(subscribers: Iterable[Subscriber], *,
                        gateway: Optional[TelegramGateway] = None) -> List[Dict[str, Any]]:
    """Check and record channel membership for several subscribers.

    A failed lookup is recorded as ``unknown`` and does not stop the batch.
    """

    results = []
    for subscriber in subscribers:
        membership_status = access.observe_membership(subscriber, gateway=gateway)
        results.append(
            {
                "subscriber_id": subscriber.pk,
                "telegram_user_id": subscriber.telegram_user_id,
                "is_member": subscriber.channel_joined,
                "status": membership_status,
            }
        )
    logger.info("Membership checked for %s subscribers", len(results))
    return results


__all__ = [
    "EffectReport",
    "InvalidTransition",
    "TransitionConflict",
    "approve",
    "commit_decision",
    "create_subscriber",
    "extend",
    "plan_duration",
    "reactivate",
    "refresh_membership",
    "refresh_memberships",
    "reject",
    "run_effects",
    "start_checkout",
    "submit_payment_proof",
    "suspend",
]
