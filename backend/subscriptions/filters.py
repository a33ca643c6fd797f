"""FilterSet definitions for subscriber endpoints."""
from __future__ import annotations

import django_filters

from subscriptions.models import FailedOperation, Subscriber


class SubscriberFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    project_id = django_filters.UUIDFilter(field_name="project_id")
    plan_id = django_filters.UUIDFilter(field_name="plan_id")
    telegram_user_id = django_filters.NumberFilter(field_name="telegram_user_id")
    expires_before = django_filters.DateTimeFilter(field_name="expiry_date", lookup_expr="lte")
    expires_after = django_filters.DateTimeFilter(field_name="expiry_date", lookup_expr="gte")

    class Meta:
        model = Subscriber
        fields = ["status", "project_id", "plan_id", "telegram_user_id"]


class FailedOperationFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    action = django_filters.CharFilter(field_name="action", lookup_expr="iexact")
    project_id = django_filters.UUIDFilter(field_name="subscriber__project_id")

    class Meta:
        model = FailedOperation
        fields = ["status", "action", "project_id"]
