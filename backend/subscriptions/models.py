"""Models owned by the subscription engine."""
from __future__ import annotations

import uuid

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.db.models import Q
from django.utils import timezone

from projects.models import Plan, Project


class Subscriber(models.Model):
    """A Telegram user's paid access to one project's channel.

    ``status`` is the billing fact and the only source of truth for access.
    The ``channel_*`` fields record what was last observed on the messaging
    platform and are reconciled against ``status``, never the other way round.
    """

    class Status(models.TextChoices):
        PENDING_PAYMENT = "pending_payment", "Pending payment"
        PENDING_APPROVAL = "pending_approval", "Pending approval"
        AWAITING_PROOF = "awaiting_proof", "Awaiting proof"
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        REJECTED = "rejected", "Rejected"
        SUSPENDED = "suspended", "Suspended"

    class PaymentMethod(models.TextChoices):
        STRIPE = "stripe", "Stripe"
        MANUAL = "manual", "Manual proof"
        ADMIN = "admin", "Admin grant"

    class MembershipStatus(models.TextChoices):
        CREATOR = "creator", "Creator"
        ADMINISTRATOR = "administrator", "Administrator"
        MEMBER = "member", "Member"
        RESTRICTED = "restricted", "Restricted"
        LEFT = "left", "Left"
        KICKED = "kicked", "Kicked"
        NEVER_JOINED = "never_joined", "Never joined"
        UNKNOWN = "unknown", "Unknown"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name="subscribers")
    plan = models.ForeignKey(Plan, on_delete=models.SET_NULL, null=True, blank=True, related_name="subscribers")
    telegram_user_id = models.BigIntegerField(db_index=True)
    username = models.CharField(max_length=255, blank=True, default="")
    first_name = models.CharField(max_length=255, blank=True, default="")

    status = models.CharField(
        max_length=32,
        choices=Status.choices,
        default=Status.PENDING_PAYMENT,
        db_index=True,
    )
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, blank=True, default="")
    payment_proof_url = models.URLField(max_length=500, blank=True, default="")

    start_date = models.DateTimeField(null=True, blank=True)
    expiry_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="End of paid access; only meaningful while active.",
    )
    expiry_reminder_sent = models.BooleanField(default=False)
    final_reminder_sent = models.BooleanField(default=False)

    channel_joined = models.BooleanField(default=False)
    channel_joined_at = models.DateTimeField(null=True, blank=True)
    channel_membership_status = models.CharField(
        max_length=32,
        choices=MembershipStatus.choices,
        default=MembershipStatus.UNKNOWN,
    )
    last_membership_check = models.DateTimeField(null=True, blank=True)

    invite_link = models.CharField(max_length=255, blank=True, default="")

    rejection_reason = models.TextField(blank=True, default="")
    suspended_at = models.DateTimeField(null=True, blank=True)
    suspended_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="suspended_subscribers",
    )
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="approved_subscribers",
    )
    notes = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions_subscriber"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["project", "telegram_user_id"],
                name="unique_subscriber_per_project",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "expiry_date"], name="subscriber_status_expiry_idx"),
        ]

    def __str__(self):
        return f"Subscriber<{self.telegram_user_id}:{self.status}>"

    @property
    def display_name(self) -> str:
        return self.first_name or self.username or str(self.telegram_user_id)

    def is_lapsed(self, now=None) -> bool:
        now = now or timezone.now()
        return self.status == self.Status.ACTIVE and self.expiry_date is not None and self.expiry_date < now


class FailedOperation(models.Model):
    """A correctness-critical side effect waiting to be retried by the drain."""

    class Action(models.TextChoices):
        KICK_EXPIRED = "kick_expired", "Remove expired member"
        KICK_SUSPENDED = "kick_suspended", "Remove suspended member"
        GRANT_ACCESS = "grant_access", "Issue access credential"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        MANUAL_INTERVENTION = "manual_intervention", "Manual intervention"

    id = models.BigAutoField(primary_key=True)
    subscriber = models.ForeignKey(Subscriber, on_delete=models.CASCADE, related_name="failed_operations")
    action = models.CharField(max_length=32, choices=Action.choices)
    payload = models.JSONField(blank=True, default=dict, encoder=DjangoJSONEncoder)
    error_message = models.TextField(blank=True, default="")
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=5)
    next_retry_at = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions_failed_operation"
        ordering = ["next_retry_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscriber", "action"],
                condition=Q(status="pending"),
                name="unique_pending_operation_per_subscriber",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="failed_op_status_retry_idx"),
        ]

    def __str__(self):
        return f"FailedOperation<{self.action}:{self.subscriber_id}:{self.status}>"


class WebhookEvent(models.Model):
    """Idempotency ledger: one row per external event that was handled."""

    class Source(models.TextChoices):
        STRIPE = "stripe", "Stripe"
        STRIPE_CONNECT = "stripe_connect", "Stripe Connect"

    class Status(models.TextChoices):
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"

    id = models.BigAutoField(primary_key=True)
    event_source = models.CharField(max_length=32, choices=Source.choices)
    event_id = models.CharField(max_length=255)
    event_type = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PROCESSED)
    result = models.JSONField(blank=True, default=dict, encoder=DjangoJSONEncoder)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    subscriber = models.ForeignKey(
        Subscriber,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_events",
    )
    processed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "subscriptions_webhook_event"
        ordering = ["-processed_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["event_source", "event_id"],
                name="unique_webhook_event_per_source",
            ),
        ]

    def __str__(self):
        return f"WebhookEvent<{self.event_source}:{self.event_id}:{self.status}>"


class ClientSubscription(models.Model):
    """The platform tier a client (project owner) is on."""

    class Status(models.TextChoices):
        TRIAL = "trial", "Trial"
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        CANCELLED = "cancelled", "Cancelled"

    id = models.BigAutoField(primary_key=True)
    client = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="client_subscription",
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.TRIAL)
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "subscriptions_client_subscription"

    def __str__(self):
        return f"ClientSubscription<{self.client_id}:{self.status}>"
