"""Subscription state machine.

``decide`` is pure: it maps a subscriber snapshot, an event and the current
time to the next status, the field changes to persist and the side effects to
run. It never touches the database or the network; ``lifecycle`` applies its
decisions.

Transition table (event: sources -> target):

    approve       pending_approval, awaiting_proof     -> active
    reject        pending_approval, awaiting_proof     -> rejected
    sweep         active                               -> active (reminders) | expired
    extend        active                               -> active
    reactivate    suspended, rejected, expired         -> active
    suspend       active                               -> suspended
    submit_proof  awaiting_proof, pending_payment      -> pending_approval
    payment       every status except suspended        -> active
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from subscriptions.exceptions import InvalidTransition

THREE_DAY_WINDOW = timedelta(days=3)
FINAL_WINDOW = timedelta(days=1)

ACTIVE = "active"
EXPIRED = "expired"
REJECTED = "rejected"
SUSPENDED = "suspended"
PENDING_PAYMENT = "pending_payment"
PENDING_APPROVAL = "pending_approval"
AWAITING_PROOF = "awaiting_proof"

ALL_STATUSES = frozenset(
    {PENDING_PAYMENT, PENDING_APPROVAL, AWAITING_PROOF, ACTIVE, EXPIRED, REJECTED, SUSPENDED}
)

PRESENT_MEMBERSHIP = frozenset({"creator", "administrator", "member", "restricted"})
ABSENT_MEMBERSHIP = frozenset({"left", "kicked", "never_joined"})


class LifecycleEvent(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    SWEEP = "sweep"
    EXTEND = "extend"
    REACTIVATE = "reactivate"
    SUSPEND = "suspend"
    SUBMIT_PROOF = "submit_proof"
    PAYMENT = "payment"


class Effect:
    GRANT_ACCESS = "grant_access"
    ISSUE_CREDENTIAL = "issue_credential"
    REVOKE_ACCESS = "revoke_access"
    RECONCILE_MEMBERSHIP = "reconcile_membership"
    REMIND_THREE_DAY = "remind_three_day"
    REMIND_FINAL = "remind_final"
    NOTIFY_EXPIRED = "notify_expired"
    NOTIFY_EXTENDED = "notify_extended"
    NOTIFY_REJECTED = "notify_rejected"
    NOTIFY_SUSPENDED = "notify_suspended"
    NOTIFY_PAYMENT = "notify_payment"


TRANSITIONS: Dict[LifecycleEvent, FrozenSet[str]] = {
    LifecycleEvent.APPROVE: frozenset({PENDING_APPROVAL, AWAITING_PROOF}),
    LifecycleEvent.REJECT: frozenset({PENDING_APPROVAL, AWAITING_PROOF}),
    LifecycleEvent.SWEEP: frozenset({ACTIVE}),
    LifecycleEvent.EXTEND: frozenset({ACTIVE}),
    LifecycleEvent.REACTIVATE: frozenset({SUSPENDED, REJECTED, EXPIRED}),
    LifecycleEvent.SUSPEND: frozenset({ACTIVE}),
    LifecycleEvent.SUBMIT_PROOF: frozenset({AWAITING_PROOF, PENDING_PAYMENT}),
    LifecycleEvent.PAYMENT: ALL_STATUSES - {SUSPENDED},
}


@dataclass(frozen=True)
class SubscriberSnapshot:
    status: str
    expiry_date: Optional[datetime] = None
    expiry_reminder_sent: bool = False
    final_reminder_sent: bool = False
    invite_link: str = ""

    @classmethod
    def from_subscriber(cls, subscriber) -> "SubscriberSnapshot":
        return cls(
            status=subscriber.status,
            expiry_date=subscriber.expiry_date,
            expiry_reminder_sent=subscriber.expiry_reminder_sent,
            final_reminder_sent=subscriber.final_reminder_sent,
            invite_link=subscriber.invite_link or "",
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of ``decide``.

    ``allowed_from`` is the status set the conditional write must match.
    When ``commit_after`` names an effect, the changes may only be persisted
    once that effect has succeeded.
    """

    event: LifecycleEvent
    next_status: str
    allowed_from: FrozenSet[str]
    changes: Dict[str, Any] = field(default_factory=dict)
    effects: Tuple[str, ...] = ()
    commit_after: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.changes and not self.effects


def _require_days(event: LifecycleEvent, duration_days: Optional[int]) -> int:
    if duration_days is None or int(duration_days) <= 0:
        raise ValueError(f"'{event.value}' requires a positive duration in days")
    return int(duration_days)


def _activation_changes(now: datetime, days: int) -> Dict[str, Any]:
    return {
        "start_date": now,
        "expiry_date": now + timedelta(days=days),
        "expiry_reminder_sent": False,
        "final_reminder_sent": False,
    }


def _sweep(snapshot: SubscriberSnapshot, now: datetime, allowed: FrozenSet[str]) -> Decision:
    expiry = snapshot.expiry_date
    event = LifecycleEvent.SWEEP
    if expiry is None:
        return Decision(event=event, next_status=ACTIVE, allowed_from=allowed)

    if expiry < now:
        return Decision(
            event=event,
            next_status=EXPIRED,
            allowed_from=allowed,
            changes={"channel_joined": False, "channel_membership_status": "kicked"},
            effects=(Effect.REVOKE_ACCESS, Effect.NOTIFY_EXPIRED),
            commit_after=Effect.REVOKE_ACCESS,
        )

    left = expiry - now
    if left <= timedelta(0):
        return Decision(event=event, next_status=ACTIVE, allowed_from=allowed)

    if left <= FINAL_WINDOW:
        if snapshot.final_reminder_sent:
            return Decision(event=event, next_status=ACTIVE, allowed_from=allowed)
        return Decision(
            event=event,
            next_status=ACTIVE,
            allowed_from=allowed,
            changes={"expiry_reminder_sent": True, "final_reminder_sent": True},
            effects=(Effect.REMIND_FINAL,),
            commit_after=Effect.REMIND_FINAL,
        )

    if left <= THREE_DAY_WINDOW and not snapshot.expiry_reminder_sent:
        return Decision(
            event=event,
            next_status=ACTIVE,
            allowed_from=allowed,
            changes={"expiry_reminder_sent": True},
            effects=(Effect.REMIND_THREE_DAY,),
            commit_after=Effect.REMIND_THREE_DAY,
            context={"days_left": math.ceil(left / timedelta(days=1))},
        )

    return Decision(event=event, next_status=ACTIVE, allowed_from=allowed)


def decide(
    snapshot: SubscriberSnapshot,
    event: LifecycleEvent,
    *,
    now: datetime,
    duration_days: Optional[int] = None,
    observed_membership: Optional[str] = None,
    reason: str = "",
) -> Decision:
    """Return the decision for ``event`` applied to ``snapshot`` at ``now``.

    Raises ``InvalidTransition`` when the transition table has no entry for
    the pair, and ``ValueError`` when a duration-bearing event has no
    duration.
    """

    event = LifecycleEvent(event)
    sources = TRANSITIONS[event]
    if snapshot.status not in sources:
        raise InvalidTransition(event.value, snapshot.status)

    if event is LifecycleEvent.SWEEP:
        return _sweep(snapshot, now, sources)

    if event is LifecycleEvent.APPROVE:
        days = _require_days(event, duration_days)
        return Decision(
            event=event,
            next_status=ACTIVE,
            allowed_from=sources,
            changes=_activation_changes(now, days),
            effects=(Effect.GRANT_ACCESS,),
        )

    if event is LifecycleEvent.REJECT:
        return Decision(
            event=event,
            next_status=REJECTED,
            allowed_from=sources,
            changes={"rejection_reason": reason},
            effects=(Effect.NOTIFY_REJECTED,),
        )

    if event is LifecycleEvent.EXTEND:
        days = _require_days(event, duration_days)
        anchor = max(snapshot.expiry_date or now, now)
        if observed_membership is None:
            effects: Tuple[str, ...] = (Effect.RECONCILE_MEMBERSHIP, Effect.NOTIFY_EXTENDED)
        elif observed_membership in ABSENT_MEMBERSHIP:
            effects = (Effect.ISSUE_CREDENTIAL, Effect.NOTIFY_EXTENDED)
        else:
            effects = (Effect.NOTIFY_EXTENDED,)
        return Decision(
            event=event,
            next_status=ACTIVE,
            allowed_from=sources,
            changes={
                "expiry_date": anchor + timedelta(days=days),
                "expiry_reminder_sent": False,
                "final_reminder_sent": False,
            },
            effects=effects,
        )

    if event is LifecycleEvent.REACTIVATE:
        days = _require_days(event, duration_days)
        changes = _activation_changes(now, days)
        changes.update(
            {
                "suspended_at": None,
                "suspended_by": None,
                "rejection_reason": "",
                "invite_link": "",
            }
        )
        return Decision(
            event=event,
            next_status=ACTIVE,
            allowed_from=sources,
            changes=changes,
            effects=(Effect.GRANT_ACCESS,),
        )

    if event is LifecycleEvent.SUSPEND:
        return Decision(
            event=event,
            next_status=SUSPENDED,
            allowed_from=sources,
            changes={
                "suspended_at": now,
                "rejection_reason": reason,
                "channel_joined": False,
            },
            effects=(Effect.REVOKE_ACCESS, Effect.NOTIFY_SUSPENDED),
        )

    if event is LifecycleEvent.SUBMIT_PROOF:
        return Decision(
            event=event,
            next_status=PENDING_APPROVAL,
            allowed_from=sources,
            changes={"payment_method": "manual"},
        )

    # PAYMENT
    days = _require_days(event, duration_days)
    was_active = snapshot.status == ACTIVE
    extending = was_active and snapshot.expiry_date is not None and snapshot.expiry_date > now
    if extending:
        changes = {
            "expiry_date": snapshot.expiry_date + timedelta(days=days),
            "expiry_reminder_sent": False,
            "final_reminder_sent": False,
        }
    else:
        changes = _activation_changes(now, days)
    changes["payment_method"] = "stripe"
    if was_active and snapshot.invite_link:
        effects = (Effect.NOTIFY_PAYMENT,)
    else:
        effects = (Effect.ISSUE_CREDENTIAL, Effect.NOTIFY_PAYMENT)
    return Decision(
        event=event,
        next_status=ACTIVE,
        allowed_from=frozenset({snapshot.status}),
        changes=changes,
        effects=effects,
        context={"extension": extending},
    )
