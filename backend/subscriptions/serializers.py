"""DRF serializers for subscriber management."""
from __future__ import annotations

from typing import Any, Dict

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from projects.models import Plan, Project
from subscriptions.models import FailedOperation, Subscriber

MAX_EXTENSION_DAYS = 3650
MAX_MEMBERSHIP_BATCH = 100


class SubscriberSerializer(serializers.ModelSerializer):
    project_id = serializers.UUIDField(read_only=True)
    plan_id = serializers.UUIDField(read_only=True, allow_null=True)
    display_name = serializers.CharField(read_only=True)
    pending_operations = serializers.SerializerMethodField()

    class Meta:
        model = Subscriber
        fields = (
            "id",
            "project_id",
            "plan_id",
            "telegram_user_id",
            "username",
            "first_name",
            "display_name",
            "status",
            "payment_method",
            "payment_proof_url",
            "start_date",
            "expiry_date",
            "expiry_reminder_sent",
            "final_reminder_sent",
            "channel_joined",
            "channel_joined_at",
            "channel_membership_status",
            "last_membership_check",
            "invite_link",
            "rejection_reason",
            "suspended_at",
            "notes",
            "pending_operations",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields

    def get_pending_operations(self, obj) -> list:
        return [
            operation.action
            for operation in obj.failed_operations.all()
            if operation.status == FailedOperation.Status.PENDING
        ]


class ProjectScopedSerializer(serializers.Serializer):
    """Resolves ``plan_id`` against the project in context."""

    def get_project(self) -> Project:
        project = self.context.get("project")
        if not isinstance(project, Project):
            raise serializers.ValidationError({"non_field_errors": [_("Project context is missing.")]})
        return project

    def resolve_plan(self, plan_id):
        if plan_id is None:
            return None
        plan = Plan.objects.filter(pk=plan_id, project=self.get_project()).first()
        if plan is None:
            raise serializers.ValidationError({"plan_id": _("Plan not found for this project.")})
        if not plan.is_active:
            raise serializers.ValidationError({"plan_id": _("Plan is not available.")})
        return plan


class SubscriberCreateSerializer(ProjectScopedSerializer):
    project_id = serializers.UUIDField()
    telegram_user_id = serializers.IntegerField(min_value=1)
    username = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    first_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    plan_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    activate = serializers.BooleanField(default=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def get_project(self) -> Project:
        return self._project

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        request = self.context["request"]
        project = Project.objects.filter(pk=attrs["project_id"], is_active=True).first()
        if project is None or not (request.user.is_staff or project.is_owned_by(request.user)):
            raise serializers.ValidationError({"project_id": _("Project not found.")})
        self._project = project
        if Subscriber.objects.filter(project=project, telegram_user_id=attrs["telegram_user_id"]).exists():
            raise serializers.ValidationError(
                {"telegram_user_id": _("This user is already subscribed to the project.")}
            )
        attrs["project"] = project
        attrs["plan"] = self.resolve_plan(attrs.pop("plan_id"))
        return attrs


class DurationSerializer(serializers.Serializer):
    duration_days = serializers.IntegerField(min_value=1, max_value=MAX_EXTENSION_DAYS, required=False)


class ExtendSerializer(serializers.Serializer):
    days = serializers.IntegerField(min_value=1, max_value=MAX_EXTENSION_DAYS)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="", max_length=2000)


class CheckoutSerializer(ProjectScopedSerializer):
    plan_id = serializers.UUIDField(required=False, allow_null=True, default=None)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        plan = self.resolve_plan(attrs.get("plan_id"))
        if plan is None:
            plan = self.context.get("default_plan")
        if plan is None:
            raise serializers.ValidationError({"plan_id": _("A plan is required.")})
        attrs["plan"] = plan
        return attrs


class PaymentProofSerializer(ProjectScopedSerializer):
    proof_url = serializers.URLField(max_length=500)
    plan_id = serializers.UUIDField(required=False, allow_null=True, default=None)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs["plan"] = self.resolve_plan(attrs.pop("plan_id"))
        return attrs


class FailedOperationSerializer(serializers.ModelSerializer):
    subscriber_id = serializers.UUIDField(read_only=True)
    project_id = serializers.UUIDField(source="subscriber.project_id", read_only=True)

    class Meta:
        model = FailedOperation
        fields = (
            "id",
            "subscriber_id",
            "project_id",
            "action",
            "status",
            "attempts",
            "max_attempts",
            "error_message",
            "next_retry_at",
            "processed_at",
            "created_at",
        )
        read_only_fields = fields


class RequeueSerializer(serializers.Serializer):
    ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)


class MembershipBatchSerializer(serializers.Serializer):
    subscriber_ids = serializers.ListField(
        child=serializers.UUIDField(),
        allow_empty=False,
        max_length=MAX_MEMBERSHIP_BATCH,
    )
