from django.contrib import admin

from .models import Plan, Project


class PlanInline(admin.TabularInline):
    model = Plan
    extra = 0
    fields = ("plan_name", "price", "currency", "duration_days", "is_active")


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ("project_name", "owner", "channel_id", "stripe_account_id", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("project_name", "channel_id", "stripe_account_id", "owner__username")
    raw_id_fields = ("owner",)
    inlines = [PlanInline]
