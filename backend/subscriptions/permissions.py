"""Object permissions for subscriber management."""
from __future__ import annotations

from rest_framework.permissions import BasePermission


def _project_of(obj):
    if hasattr(obj, "subscriber"):
        obj = obj.subscriber
    return getattr(obj, "project", obj)


class IsProjectOwnerOrStaff(BasePermission):
    """Staff may act on anything; other users only on their own projects."""

    message = "You do not manage this project."

    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated)

    def has_object_permission(self, request, view, obj):
        if request.user.is_staff:
            return True
        project = _project_of(obj)
        return project.is_owned_by(request.user)
