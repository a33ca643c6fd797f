import decimal
import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models
from django.db.models import Q


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Project",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, help_text="Unique identifier for the project", primary_key=True, serialize=False)),
                ("project_name", models.CharField(help_text="Display name used in subscriber messages", max_length=200)),
                ("bot_token", models.CharField(help_text="Bot API token of the bot administering the channel", max_length=255)),
                ("channel_id", models.CharField(help_text="Telegram chat id of the paid channel (e.g. -100123456789)", max_length=64)),
                ("support_contact", models.CharField(blank=True, default="", help_text="Support handle shown to subscribers", max_length=255)),
                ("stripe_account_id", models.CharField(blank=True, help_text="Connected Stripe account receiving this project's payments", max_length=255, null=True)),
                ("is_active", models.BooleanField(default=True, help_text="Inactive projects accept no new payments")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="Client who owns the channel and receives its payments",
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="owned_projects",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "projects_project",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["owner", "is_active"], name="projects_owner_active_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=Q(stripe_account_id__isnull=False),
                        fields=("stripe_account_id",),
                        name="unique_project_stripe_account",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("plan_name", models.CharField(max_length=120)),
                ("price", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=10, validators=[django.core.validators.MinValueValidator(decimal.Decimal("0.00"))])),
                ("currency", models.CharField(default="usd", max_length=3)),
                ("duration_days", models.PositiveIntegerField(default=30, help_text="Days of access granted per purchase", validators=[django.core.validators.MinValueValidator(1)])),
                ("description", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "project",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="plans",
                        to="projects.project",
                    ),
                ),
            ],
            options={
                "db_table": "projects_plan",
                "ordering": ["price"],
            },
        ),
    ]
