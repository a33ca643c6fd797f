from django.contrib import admin

from .models import AuditRecord


@admin.register(AuditRecord)
class AuditRecordAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "actor",
        "actor_label",
        "action",
        "resource_type",
        "resource_id",
    )
    list_filter = ("action", "resource_type")
    search_fields = ("action", "resource_id", "actor_label", "actor__username", "actor__email")
    ordering = ("-created_at",)
    readonly_fields = (
        "created_at",
        "actor",
        "actor_label",
        "action",
        "resource_type",
        "resource_id",
        "changes",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
