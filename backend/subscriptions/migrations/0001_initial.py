import uuid

import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models
from django.db.models import Q


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("projects", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscriber",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("telegram_user_id", models.BigIntegerField(db_index=True)),
                ("username", models.CharField(blank=True, default="", max_length=255)),
                ("first_name", models.CharField(blank=True, default="", max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending_payment", "Pending payment"),
                            ("pending_approval", "Pending approval"),
                            ("awaiting_proof", "Awaiting proof"),
                            ("active", "Active"),
                            ("expired", "Expired"),
                            ("rejected", "Rejected"),
                            ("suspended", "Suspended"),
                        ],
                        db_index=True,
                        default="pending_payment",
                        max_length=32,
                    ),
                ),
                (
                    "payment_method",
                    models.CharField(
                        blank=True,
                        choices=[("stripe", "Stripe"), ("manual", "Manual proof"), ("admin", "Admin grant")],
                        default="",
                        max_length=16,
                    ),
                ),
                ("payment_proof_url", models.URLField(blank=True, default="", max_length=500)),
                ("start_date", models.DateTimeField(blank=True, null=True)),
                ("expiry_date", models.DateTimeField(blank=True, help_text="End of paid access; only meaningful while active.", null=True)),
                ("expiry_reminder_sent", models.BooleanField(default=False)),
                ("final_reminder_sent", models.BooleanField(default=False)),
                ("channel_joined", models.BooleanField(default=False)),
                ("channel_joined_at", models.DateTimeField(blank=True, null=True)),
                (
                    "channel_membership_status",
                    models.CharField(
                        choices=[
                            ("creator", "Creator"),
                            ("administrator", "Administrator"),
                            ("member", "Member"),
                            ("restricted", "Restricted"),
                            ("left", "Left"),
                            ("kicked", "Kicked"),
                            ("never_joined", "Never joined"),
                            ("unknown", "Unknown"),
                        ],
                        default="unknown",
                        max_length=32,
                    ),
                ),
                ("last_membership_check", models.DateTimeField(blank=True, null=True)),
                ("invite_link", models.CharField(blank=True, default="", max_length=255)),
                ("rejection_reason", models.TextField(blank=True, default="")),
                ("suspended_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "approved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="approved_subscribers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="subscribers",
                        to="projects.plan",
                    ),
                ),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscribers",
                        to="projects.project",
                    ),
                ),
                (
                    "suspended_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="suspended_subscribers",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "subscriptions_subscriber",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status", "expiry_date"], name="subscriber_status_expiry_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("project", "telegram_user_id"), name="unique_subscriber_per_project"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FailedOperation",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("kick_expired", "Remove expired member"),
                            ("kick_suspended", "Remove suspended member"),
                            ("grant_access", "Issue access credential"),
                        ],
                        max_length=32,
                    ),
                ),
                ("payload", models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ("error_message", models.TextField(blank=True, default="")),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("max_attempts", models.PositiveIntegerField(default=5)),
                ("next_retry_at", models.DateTimeField(db_index=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("manual_intervention", "Manual intervention")],
                        default="pending",
                        max_length=32,
                    ),
                ),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "subscriber",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="failed_operations",
                        to="subscriptions.subscriber",
                    ),
                ),
            ],
            options={
                "db_table": "subscriptions_failed_operation",
                "ordering": ["next_retry_at"],
                "indexes": [models.Index(fields=["status", "next_retry_at"], name="failed_op_status_retry_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=Q(status="pending"),
                        fields=("subscriber", "action"),
                        name="unique_pending_operation_per_subscriber",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_source", models.CharField(choices=[("stripe", "Stripe"), ("stripe_connect", "Stripe Connect")], max_length=32)),
                ("event_id", models.CharField(max_length=255)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("status", models.CharField(choices=[("processed", "Processed"), ("ignored", "Ignored")], default="processed", max_length=20)),
                ("result", models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the raw payload for drift detection.", max_length=64)),
                ("processed_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "subscriber",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="webhook_events",
                        to="subscriptions.subscriber",
                    ),
                ),
            ],
            options={
                "db_table": "subscriptions_webhook_event",
                "ordering": ["-processed_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("event_source", "event_id"), name="unique_webhook_event_per_source"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ClientSubscription",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[("trial", "Trial"), ("active", "Active"), ("expired", "Expired"), ("cancelled", "Cancelled")],
                        default="trial",
                        max_length=16,
                    ),
                ),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "client",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="client_subscription",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "subscriptions_client_subscription",
            },
        ),
    ]
