from django.contrib import admin

from .models import ClientSubscription, FailedOperation, Subscriber, WebhookEvent


@admin.register(Subscriber)
class SubscriberAdmin(admin.ModelAdmin):
    """Lifecycle fields are read-only here; changes go through the API actions."""

    list_display = ("telegram_user_id", "display_name", "project", "status", "expiry_date", "channel_membership_status")
    list_filter = ("status", "payment_method", "channel_membership_status")
    search_fields = ("telegram_user_id", "username", "first_name", "project__project_name")
    ordering = ("-created_at",)
    list_select_related = ("project", "plan")
    raw_id_fields = ("project", "plan", "approved_by", "suspended_by")
    readonly_fields = (
        "status",
        "start_date",
        "expiry_date",
        "expiry_reminder_sent",
        "final_reminder_sent",
        "channel_joined",
        "channel_joined_at",
        "channel_membership_status",
        "last_membership_check",
        "invite_link",
        "suspended_at",
        "created_at",
        "updated_at",
    )

    fieldsets = (
        ("Subscriber", {"fields": ("project", "plan", "telegram_user_id", "username", "first_name", "notes")}),
        ("Billing", {"fields": ("status", "payment_method", "payment_proof_url", "start_date", "expiry_date")}),
        ("Reminders", {"fields": ("expiry_reminder_sent", "final_reminder_sent")}),
        (
            "Channel",
            {
                "fields": (
                    "invite_link",
                    "channel_joined",
                    "channel_joined_at",
                    "channel_membership_status",
                    "last_membership_check",
                )
            },
        ),
        ("Moderation", {"fields": ("rejection_reason", "approved_by", "suspended_by", "suspended_at")}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )


@admin.register(FailedOperation)
class FailedOperationAdmin(admin.ModelAdmin):
    list_display = ("id", "action", "subscriber", "status", "attempts", "max_attempts", "next_retry_at")
    list_filter = ("action", "status")
    search_fields = ("subscriber__telegram_user_id", "error_message")
    ordering = ("next_retry_at",)
    raw_id_fields = ("subscriber",)
    readonly_fields = ("created_at", "updated_at", "processed_at")


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ("event_id", "event_source", "event_type", "status", "processed_at")
    list_filter = ("event_source", "status", "event_type")
    search_fields = ("event_id",)
    ordering = ("-processed_at",)
    readonly_fields = ("event_source", "event_id", "event_type", "status", "result", "payload_hash", "subscriber", "processed_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ClientSubscription)
class ClientSubscriptionAdmin(admin.ModelAdmin):
    list_display = ("client", "status", "trial_ends_at", "current_period_end")
    list_filter = ("status",)
    search_fields = ("client__username", "client__email")
    raw_id_fields = ("client",)
