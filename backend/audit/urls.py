from rest_framework.routers import DefaultRouter

from .views import AuditRecordViewSet

router = DefaultRouter()
router.register(r"records", AuditRecordViewSet, basename="audit-record")

urlpatterns = router.urls
