"""Stripe webhook endpoints for subscriber payments."""
from __future__ import annotations

import logging

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.response import Response
from rest_framework.views import APIView

from subscriptions.exceptions import RateLimitExceeded, WebhookError
from subscriptions.models import WebhookEvent
from subscriptions.observability.metrics import WEBHOOK_OUTCOME_COUNT
from subscriptions.services import idempotency
from subscriptions.services.rate_limit import check_rate_limit, client_ip
from subscriptions.services.reconciliation import (
    ReconciliationResult,
    reconcile_stripe_event,
    resolve_connected_project,
)
from subscriptions.services.stripe_payments import (
    StripeConfigurationError,
    StripeServiceError,
    StripeWebhookSignatureError,
    parse_event,
)

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status: int, headers=None) -> Response:
    return Response({"code": code, "message": message}, status=status, headers=headers)


@method_decorator(csrf_exempt, name="dispatch")
class StripeWebhookView(APIView):
    """Receive checkout events for the platform's own Stripe account."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]

    source = WebhookEvent.Source.STRIPE
    secret_setting = "STRIPE_WEBHOOK_SECRET"

    def post(self, request, *args, **kwargs):  # noqa: D401 - DRF signature
        try:
            self.enforce_rate_limit(request)
        except RateLimitExceeded as exc:
            logger.warning("Stripe webhook rate limited for %s", client_ip(request))
            WEBHOOK_OUTCOME_COUNT.labels(source=self.source, outcome="rate_limited").inc()
            return _error(exc.code, str(exc), exc.status_code, headers={"Retry-After": str(exc.retry_after)})

        payload = request.body
        sig_header = request.headers.get("Stripe-Signature") or ""
        try:
            event = parse_event(payload, sig_header, getattr(settings, self.secret_setting, ""))
        except StripeWebhookSignatureError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            WEBHOOK_OUTCOME_COUNT.labels(source=self.source, outcome="invalid_signature").inc()
            return _error("invalid_signature", str(exc), 401)
        except StripeConfigurationError as exc:
            logger.error("Stripe webhook configuration error: %s", exc)
            return _error("configuration_error", "Webhook endpoint is not configured.", 500)
        except StripeServiceError as exc:
            logger.warning("Stripe webhook rejected due to malformed payload: %s", exc)
            WEBHOOK_OUTCOME_COUNT.labels(source=self.source, outcome="invalid_payload").inc()
            return _error("invalid_payload", str(exc), 400)

        try:
            result = self.handle_event(event, idempotency.payload_digest(payload))
        except WebhookError as exc:
            logger.warning(
                "Stripe event %s (%s) rejected: %s",
                event.get("id"),
                event.get("type"),
                exc,
            )
            WEBHOOK_OUTCOME_COUNT.labels(source=self.source, outcome=exc.code).inc()
            return _error(exc.code, str(exc), exc.status_code)

        return Response(result.as_response(), status=200)

    def enforce_rate_limit(self, request) -> None:
        return None

    def handle_event(self, event, payload_hash: str) -> ReconciliationResult:
        return reconcile_stripe_event(event, source=self.source, payload_hash=payload_hash)


class StripeConnectWebhookView(StripeWebhookView):
    """Receive checkout events for projects' connected accounts."""

    source = WebhookEvent.Source.STRIPE_CONNECT
    secret_setting = "STRIPE_CONNECT_WEBHOOK_SECRET"

    def enforce_rate_limit(self, request) -> None:
        check_rate_limit(f"stripe-connect:{client_ip(request)}")

    def handle_event(self, event, payload_hash: str) -> ReconciliationResult:
        account_id = event.get("account")
        if not account_id:
            logger.info("Connect event %s carries no account; skipping.", event.get("id"))
            WEBHOOK_OUTCOME_COUNT.labels(source=self.source, outcome=ReconciliationResult.SKIPPED).inc()
            return ReconciliationResult(ReconciliationResult.SKIPPED, detail="platform_event")
        project = resolve_connected_project(account_id)
        return reconcile_stripe_event(event, source=self.source, project=project, payload_hash=payload_hash)
