"""Subscriber management API: read endpoints and admin lifecycle actions."""
from __future__ import annotations

import logging

from django.db.models import Prefetch
from django_filters import rest_framework as filters
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response

from subscriptions.exceptions import InvalidTransition, TransitionConflict
from subscriptions.filters import FailedOperationFilter, SubscriberFilter
from subscriptions.models import FailedOperation, Subscriber
from subscriptions.permissions import IsProjectOwnerOrStaff
from subscriptions.serializers import (
    CheckoutSerializer,
    DurationSerializer,
    ExtendSerializer,
    FailedOperationSerializer,
    MembershipBatchSerializer,
    PaymentProofSerializer,
    ReasonSerializer,
    RequeueSerializer,
    SubscriberCreateSerializer,
    SubscriberSerializer,
)
from subscriptions.services import lifecycle
from subscriptions.services.failed_operations import requeue_manual_operations
from subscriptions.services.stripe_payments import StripeConfigurationError, StripeServiceError

logger = logging.getLogger(__name__)


def _lifecycle_error(exc: Exception) -> Response:
    if isinstance(exc, TransitionConflict):
        return Response(
            {"code": "transition_conflict", "message": str(exc)},
            status=status.HTTP_409_CONFLICT,
        )
    return Response(
        {"code": "invalid_transition", "message": str(exc)},
        status=status.HTTP_400_BAD_REQUEST,
    )


class SubscriberViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    viewsets.GenericViewSet,
):
    """List, inspect and act on subscribers of the projects the caller manages."""

    serializer_class = SubscriberSerializer
    permission_classes = [IsProjectOwnerOrStaff]
    filterset_class = SubscriberFilter
    filter_backends = [filters.DjangoFilterBackend]

    def get_queryset(self):
        queryset = (
            Subscriber.objects.select_related("project", "plan")
            .prefetch_related(
                Prefetch(
                    "failed_operations",
                    queryset=FailedOperation.objects.filter(status=FailedOperation.Status.PENDING),
                )
            )
            .order_by("-created_at")
        )
        user = self.request.user
        if not user.is_staff:
            queryset = queryset.filter(project__owner=user)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = SubscriberCreateSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        subscriber = lifecycle.create_subscriber(
            data["project"],
            data["telegram_user_id"],
            username=data["username"],
            first_name=data["first_name"],
            plan=data["plan"],
            activate=data["activate"],
            notes=data["notes"],
            actor=request.user,
        )
        subscriber.refresh_from_db()
        return Response(SubscriberSerializer(subscriber).data, status=status.HTTP_201_CREATED)

    def _respond(self, subscriber: Subscriber) -> Response:
        subscriber.refresh_from_db()
        return Response(SubscriberSerializer(subscriber).data)

    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        subscriber = self.get_object()
        serializer = DurationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.approve(
                subscriber,
                actor=request.user,
                duration_days=serializer.validated_data.get("duration_days"),
            )
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        subscriber = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.reject(subscriber, reason=serializer.validated_data["reason"], actor=request.user)
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"])
    def extend(self, request, pk=None):
        subscriber = self.get_object()
        serializer = ExtendSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.extend(subscriber, serializer.validated_data["days"], actor=request.user)
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"])
    def reactivate(self, request, pk=None):
        subscriber = self.get_object()
        serializer = DurationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.reactivate(
                subscriber,
                actor=request.user,
                duration_days=serializer.validated_data.get("duration_days"),
            )
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"])
    def suspend(self, request, pk=None):
        subscriber = self.get_object()
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.suspend(subscriber, reason=serializer.validated_data["reason"], actor=request.user)
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"], url_path="submit-proof")
    def submit_proof(self, request, pk=None):
        subscriber = self.get_object()
        serializer = PaymentProofSerializer(data=request.data, context={"project": subscriber.project})
        serializer.is_valid(raise_exception=True)
        try:
            lifecycle.submit_payment_proof(
                subscriber,
                serializer.validated_data["proof_url"],
                plan=serializer.validated_data["plan"],
                actor=request.user,
            )
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        return self._respond(subscriber)

    @action(detail=True, methods=["post"])
    def checkout(self, request, pk=None):
        subscriber = self.get_object()
        serializer = CheckoutSerializer(
            data=request.data,
            context={"project": subscriber.project, "default_plan": subscriber.plan},
        )
        serializer.is_valid(raise_exception=True)
        try:
            session = lifecycle.start_checkout(subscriber, serializer.validated_data["plan"], actor=request.user)
        except (InvalidTransition, TransitionConflict) as exc:
            return _lifecycle_error(exc)
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Unable to create Stripe checkout session for subscriber %s: %s", subscriber.pk, exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        return Response(
            {
                "checkout_session_id": session.get("id"),
                "checkout_url": session.get("url"),
                "subscriber": SubscriberSerializer(subscriber).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="membership-check")
    def membership_check(self, request, pk=None):
        subscriber = self.get_object()
        lifecycle.refresh_membership(subscriber)
        return self._respond(subscriber)

    @action(detail=False, methods=["post"], url_path="membership-check", url_name="membership-check-batch")
    def membership_check_batch(self, request):
        serializer = MembershipBatchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        ids = list(dict.fromkeys(serializer.validated_data["subscriber_ids"]))
        found = Subscriber.objects.select_related("project").in_bulk(ids)
        subscribers = [found[pk] for pk in ids if pk in found]
        if not subscribers:
            return Response({"detail": "No subscribers found."}, status=status.HTTP_404_NOT_FOUND)
        for subscriber in subscribers:
            self.check_object_permissions(request, subscriber)

        results = lifecycle.refresh_memberships(subscribers)
        return Response({"results": results})


class FailedOperationViewSet(viewsets.ReadOnlyModelViewSet):
    """Inspect the failed-operation queue; staff may requeue flagged rows."""

    serializer_class = FailedOperationSerializer
    permission_classes = [IsProjectOwnerOrStaff]
    filterset_class = FailedOperationFilter
    filter_backends = [filters.DjangoFilterBackend]

    def get_queryset(self):
        queryset = FailedOperation.objects.select_related("subscriber").order_by("next_retry_at")
        user = self.request.user
        if not user.is_staff:
            queryset = queryset.filter(subscriber__project__owner=user)
        return queryset

    @action(detail=False, methods=["post"], permission_classes=[IsAdminUser])
    def requeue(self, request):
        serializer = RequeueSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        stats = requeue_manual_operations(ids=serializer.validated_data["ids"])
        return Response(stats)
