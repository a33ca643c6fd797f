from rest_framework import serializers

from .models import AuditRecord


class AuditRecordSerializer(serializers.ModelSerializer):
    actor = serializers.SerializerMethodField()
    summary = serializers.SerializerMethodField()

    class Meta:
        model = AuditRecord
        fields = (
            "id",
            "created_at",
            "actor",
            "actor_label",
            "action",
            "resource_type",
            "resource_id",
            "changes",
            "summary",
        )
        read_only_fields = fields

    def get_actor(self, obj):
        user = getattr(obj, "actor", None)
        if not user:
            return None
        return {
            "id": user.pk,
            "username": getattr(user, "username", None),
            "email": getattr(user, "email", None),
        }

    def get_summary(self, obj) -> str:
        who = obj.actor.username if obj.actor_id else (obj.actor_label or "system")
        verb = (obj.action or "").replace("_", " ").replace(".", " › ")
        return f"{who} • {verb}"
