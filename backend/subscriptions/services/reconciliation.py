"""Payment reconciliation for Stripe checkout events.

A verified event is applied at most once per ``(event_source, event_id)``:
the ledger is checked up front, then the payment transition and the ledger
row are written in one transaction against the locked subscriber row, so a
concurrent redelivery either sees the ledger row or loses on the unique
constraint.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from audit.services import record_audit
from projects.models import Plan, Project
from subscriptions.exceptions import (
    CrossTenantError,
    EntityNotFound,
    InvalidTransition,
    WebhookValidationError,
)
from subscriptions.models import Subscriber, WebhookEvent
from subscriptions.observability.logging import log_subscription_event
from subscriptions.observability.metrics import WEBHOOK_OUTCOME_COUNT
from subscriptions.services import idempotency
from subscriptions.services.lifecycle import commit_decision, plan_duration, run_effects
from subscriptions.services.state_machine import LifecycleEvent, SubscriberSnapshot, decide

logger = logging.getLogger(__name__)

SUPPORTED_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)
PAID_STATUSES = frozenset({"paid", "no_payment_required"})


@dataclass(frozen=True)
class ReconciliationResult:
    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"
    SKIPPED = "skipped"

    status: str
    detail: str = ""
    subscriber_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status}
        if self.detail:
            body["detail"] = self.detail
        if self.subscriber_id:
            body["subscriber_id"] = self.subscriber_id
        return body


def _finish(source: str, result: ReconciliationResult) -> ReconciliationResult:
    WEBHOOK_OUTCOME_COUNT.labels(source=source, outcome=result.status).inc()
    return result


def _record_ignored(source: str, event_id: str, event_type: str, reason: str, payload_hash: str,
                    subscriber: Optional[Subscriber] = None) -> ReconciliationResult:
    try:
        with transaction.atomic():
            idempotency.record_event(
                source=source,
                event_id=event_id,
                event_type=event_type,
                status=WebhookEvent.Status.IGNORED,
                result={"reason": reason},
                payload_hash=payload_hash,
                subscriber=subscriber,
            )
    except IntegrityError:
        return _finish(source, ReconciliationResult(ReconciliationResult.ALREADY_PROCESSED))
    logger.info("Stripe event %s (%s) ignored: %s", event_id, event_type, reason)
    return _finish(source, ReconciliationResult(ReconciliationResult.IGNORED, detail=reason))


def _subscriber_reference(session: Dict[str, Any]) -> uuid.UUID:
    metadata = session.get("metadata") or {}
    reference = session.get("client_reference_id") or metadata.get("subscriber_id")
    if not reference:
        raise WebhookValidationError("Checkout session carries no subscriber reference.")
    try:
        return uuid.UUID(str(reference))
    except ValueError as exc:
        raise WebhookValidationError("Subscriber reference is not a valid identifier.") from exc


def _resolve_plan(session: Dict[str, Any], project: Project, subscriber: Subscriber) -> Optional[Plan]:
    plan_id = (session.get("metadata") or {}).get("plan_id")
    if not plan_id:
        return subscriber.plan
    try:
        plan = Plan.objects.filter(pk=uuid.UUID(str(plan_id))).first()
    except ValueError as exc:
        raise WebhookValidationError("Plan reference is not a valid identifier.") from exc
    if plan is None:
        return subscriber.plan
    if plan.project_id != project.pk:
        raise CrossTenantError(f"Plan {plan.pk} does not belong to project {project.pk}.")
    return plan


def resolve_connected_project(account_id: str) -> Project:
    project = Project.objects.filter(stripe_account_id=account_id).first()
    if project is None:
        raise EntityNotFound(f"No project is connected to account {account_id}.")
    return project


def reconcile_stripe_event(
    event: Dict[str, Any],
    *,
    source: str,
    project: Optional[Project] = None,
    payload_hash: str = "",
) -> ReconciliationResult:
    """Apply a verified Stripe event.

    ``project`` is the tenant already resolved from the connected account;
    the direct integration passes ``None`` and trusts the subscriber's own
    project, checked against ``metadata.project_id`` when present.
    """

    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise WebhookValidationError("Event has no identifier.")

    if idempotency.is_processed(source, event_id):
        logger.info("Stripe event %s (%s) already processed.", event_id, event_type)
        return _finish(source, ReconciliationResult(ReconciliationResult.ALREADY_PROCESSED))

    if event_type not in SUPPORTED_EVENT_TYPES:
        return _record_ignored(source, event_id, event_type, "unsupported_event_type", payload_hash)

    session = (event.get("data") or {}).get("object") or {}
    if not isinstance(session, dict):
        raise WebhookValidationError("Event carries no checkout session.")
    if session.get("payment_status") and session["payment_status"] not in PAID_STATUSES:
        return _record_ignored(source, event_id, event_type, "payment_not_completed", payload_hash)

    subscriber_id = _subscriber_reference(session)
    subscriber = Subscriber.objects.select_related("project", "plan").filter(pk=subscriber_id).first()
    if subscriber is None:
        raise EntityNotFound(f"Subscriber {subscriber_id} not found.")

    if project is None:
        claimed_project = (session.get("metadata") or {}).get("project_id")
        if claimed_project and str(claimed_project) != str(subscriber.project_id):
            raise CrossTenantError(f"Subscriber {subscriber.pk} does not belong to project {claimed_project}.")
        project = subscriber.project
    elif subscriber.project_id != project.pk:
        raise CrossTenantError(f"Subscriber {subscriber.pk} does not belong to project {project.pk}.")

    plan = _resolve_plan(session, project, subscriber)
    now = timezone.now()

    try:
        with transaction.atomic():
            locked = (
                Subscriber.objects.select_for_update(of=("self",))
                .select_related("project", "plan")
                .get(pk=subscriber.pk)
            )
            if idempotency.is_processed(source, event_id):
                return _finish(source, ReconciliationResult(ReconciliationResult.ALREADY_PROCESSED))

            before = {"status": locked.status, "expiry_date": locked.expiry_date}
            try:
                decision = decide(
                    SubscriberSnapshot.from_subscriber(locked),
                    LifecycleEvent.PAYMENT,
                    now=now,
                    duration_days=plan_duration(locked, plan),
                )
            except InvalidTransition:
                logger.error("Payment %s received for subscriber %s in status %s", event_id, locked.pk, locked.status)
                idempotency.record_event(
                    source=source,
                    event_id=event_id,
                    event_type=event_type,
                    status=WebhookEvent.Status.IGNORED,
                    result={"reason": f"subscriber_{locked.status}"},
                    payload_hash=payload_hash,
                    subscriber=locked,
                )
                return _finish(
                    source,
                    ReconciliationResult(ReconciliationResult.IGNORED, detail=f"subscriber_{locked.status}",
                                         subscriber_id=str(locked.pk)),
                )

            extra = {"plan": plan} if plan is not None else None
            commit_decision(locked, decision, extra_changes=extra, now=now)
            idempotency.record_event(
                source=source,
                event_id=event_id,
                event_type=event_type,
                result={
                    "status": "processed",
                    "subscriber_id": str(locked.pk),
                    "project_id": str(project.pk),
                    "expiry_date": locked.expiry_date,
                    "extension": decision.context.get("extension", False),
                },
                payload_hash=payload_hash,
                subscriber=locked,
            )
    except IntegrityError:
        logger.info("Stripe event %s recorded concurrently; treating as duplicate.", event_id)
        return _finish(source, ReconciliationResult(ReconciliationResult.ALREADY_PROCESSED))

    try:
        report = run_effects(locked, decision)
    except Exception:
        logger.exception("Post-payment effects failed for subscriber %s (event %s)", locked.pk, event_id)
        report = None

    record_audit(
        action=f"{source}.payment_completed",
        resource_type="subscriber",
        resource_id=locked.pk,
        changes={
            "stripe_event_id": event_id,
            "session_id": session.get("id"),
            "project_id": str(project.pk),
            "connected_account_id": event.get("account"),
            "plan_id": str(plan.pk) if plan else None,
            "amount_total": session.get("amount_total"),
            "currency": session.get("currency"),
            "is_extension": decision.context.get("extension", False),
            "before": before,
            "new_expiry_date": locked.expiry_date,
            "queued": report.queued if report else {},
        },
        actor_label=f"webhook.{source}",
    )
    log_subscription_event(
        message="payment reconciled",
        subscriber_id=locked.pk,
        project_id=project.pk,
        actor=f"webhook.{source}",
        extra={"event_id": event_id, "expiry_date": locked.expiry_date.isoformat()},
    )
    return _finish(
        source,
        ReconciliationResult(ReconciliationResult.PROCESSED, subscriber_id=str(locked.pk)),
    )
