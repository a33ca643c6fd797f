from __future__ import annotations

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class AuditRecord(models.Model):
    """Append-only trail of state changes made to subscription resources."""

    id = models.BigAutoField(primary_key=True)
    created_at = models.DateTimeField(auto_now_add=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_records",
    )
    actor_label = models.CharField(
        max_length=128,
        blank=True,
        help_text="Non-user actor, e.g. celery.run_subscription_sweep or webhook.stripe",
    )
    action = models.CharField(max_length=128)
    resource_type = models.CharField(max_length=64)
    resource_id = models.CharField(max_length=64)
    changes = models.JSONField(blank=True, default=dict, encoder=DjangoJSONEncoder)

    class Meta:
        db_table = "audit_record"
        ordering = ("-created_at",)
        indexes = [
            models.Index(fields=("resource_type", "resource_id"), name="audit_resource_idx"),
            models.Index(fields=("action", "-created_at"), name="audit_action_created_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - human readable only
        return f"AuditRecord<{self.action} {self.resource_type}:{self.resource_id}>"
