"""URL routes for the subscription engine."""
from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import FailedOperationViewSet, SubscriberViewSet
from .views_webhook import StripeConnectWebhookView, StripeWebhookView

app_name = "subscriptions"

router = DefaultRouter()
router.register(r"subscribers", SubscriberViewSet, basename="subscriber")
router.register(r"failed-operations", FailedOperationViewSet, basename="failed-operation")

webhook_urlpatterns = [
    path("stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("stripe/connect/", StripeConnectWebhookView.as_view(), name="stripe-connect-webhook"),
]

urlpatterns = [
    path("webhooks/", include(webhook_urlpatterns)),
    path("", include(router.urls)),
]
