import uuid
from decimal import Decimal

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class Project(models.Model):
    """
    Project model - a paid Telegram channel run by a client.

    Holds the channel coordinates and the credentials the engine needs to act
    on the channel (bot token) and to accept payments (connected Stripe
    account). Managed by the account surface; the subscription engine only
    reads it.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for the project"
    )

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='owned_projects',
        help_text="Client who owns the channel and receives its payments"
    )

    project_name = models.CharField(
        max_length=200,
        help_text="Display name used in subscriber messages"
    )

    # Telegram coordinates
    bot_token = models.CharField(
        max_length=255,
        help_text="Bot API token of the bot administering the channel"
    )
    channel_id = models.CharField(
        max_length=64,
        help_text="Telegram chat id of the paid channel (e.g. -100123456789)"
    )
    support_contact = models.CharField(
        max_length=255,
        blank=True,
        default='',
        help_text="Support handle shown to subscribers"
    )

    stripe_account_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Connected Stripe account receiving this project's payments"
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Inactive projects accept no new payments"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'projects_project'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['stripe_account_id'],
                condition=Q(stripe_account_id__isnull=False),
                name='unique_project_stripe_account',
            ),
        ]
        indexes = [
            models.Index(fields=['owner', 'is_active'], name='projects_owner_active_idx'),
        ]

    def __str__(self):
        return self.project_name

    def is_owned_by(self, user) -> bool:
        return bool(user and user.is_authenticated and self.owner_id == user.pk)


class Plan(models.Model):
    """A time-boxed subscription offer sold for a project's channel."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(
        Project,
        on_delete=models.CASCADE,
        related_name='plans',
    )
    plan_name = models.CharField(max_length=120)
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[MinValueValidator(Decimal('0.00'))],
    )
    currency = models.CharField(max_length=3, default='usd')
    duration_days = models.PositiveIntegerField(
        default=30,
        validators=[MinValueValidator(1)],
        help_text="Days of access granted per purchase"
    )
    description = models.TextField(blank=True, default='')
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'projects_plan'
        ordering = ['price']

    def __str__(self):
        return f"{self.plan_name} ({self.duration_days}d)"

    @property
    def price_in_minor_units(self) -> int:
        return int((self.price * 100).quantize(Decimal('1')))
