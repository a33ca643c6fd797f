from __future__ import annotations

from django_filters import rest_framework as filters
from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from .models import AuditRecord
from .serializers import AuditRecordSerializer


class AuditRecordFilter(filters.FilterSet):
    start = filters.IsoDateTimeFilter(field_name="created_at", lookup_expr="gte")
    end = filters.IsoDateTimeFilter(field_name="created_at", lookup_expr="lte")
    action = filters.CharFilter(field_name="action", lookup_expr="icontains")

    class Meta:
        model = AuditRecord
        fields = ["action", "resource_type", "resource_id", "actor"]


class AuditRecordViewSet(ReadOnlyModelViewSet):
    """Expose the audit trail; non-staff users only see their own actions."""

    serializer_class = AuditRecordSerializer
    permission_classes = [IsAuthenticated]
    queryset = AuditRecord.objects.select_related("actor").order_by("-created_at")
    filterset_class = AuditRecordFilter
    filter_backends = [filters.DjangoFilterBackend]

    def get_queryset(self):
        qs = super().get_queryset()
        user = self.request.user
        if not user.is_staff:
            qs = qs.filter(actor=user)
        return qs
