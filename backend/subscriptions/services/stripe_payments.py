"""Stripe checkout and webhook helpers used by the payment flows."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from projects.models import Plan
    from subscriptions.models import Subscriber


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


class StripeServiceError(RuntimeError):
    """Raised when Stripe returns an operational error."""


class StripeWebhookSignatureError(StripeServiceError):
    """Raised when webhook signature validation fails."""


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version


def _default_success_url() -> str:
    url = getattr(settings, "STRIPE_SUCCESS_URL", "")
    if not url:
        raise StripeConfigurationError("STRIPE_SUCCESS_URL must be configured.")
    return url


def _default_cancel_url() -> str:
    url = getattr(settings, "STRIPE_CANCEL_URL", "")
    if not url:
        raise StripeConfigurationError("STRIPE_CANCEL_URL must be configured.")
    return url


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


def _append_checkout_params(url: str, params: Dict[str, Any], *, include_session: bool = False) -> str:
    """Append query parameters to success/cancel URLs, preserving existing values."""

    if not params and not include_session:
        return url

    split_url = urlsplit(url)
    existing_params = dict(parse_qsl(split_url.query, keep_blank_values=True))

    for key, value in params.items():
        if value in (None, ""):
            continue
        existing_params[key] = str(value)

    query = urlencode(existing_params, doseq=True)
    if include_session and "session_id" not in existing_params:
        session_fragment = "session_id={CHECKOUT_SESSION_ID}"
        query = f"{query}&{session_fragment}" if query else session_fragment

    return urlunsplit((split_url.scheme, split_url.netloc, split_url.path, query, split_url.fragment))


def create_checkout_session(
    *,
    success_url: str,
    cancel_url: str,
    line_items: Iterable[Dict[str, Any]],
    mode: str = "payment",
    metadata: Optional[Dict[str, Any]] = None,
    client_reference_id: Optional[str] = None,
    stripe_account: Optional[str] = None,
) -> Dict[str, Any]:
    """Wrapper around ``stripe.checkout.Session.create`` with consistent error handling."""

    _configure_stripe()

    options: Dict[str, Any] = {
        "success_url": success_url,
        "cancel_url": cancel_url,
        "mode": mode,
        "line_items": list(line_items),
    }

    if metadata:
        options["metadata"] = _stringify_metadata(metadata)
        if mode == "payment":
            options["payment_intent_data"] = {"metadata": options["metadata"]}
    if client_reference_id:
        options["client_reference_id"] = str(client_reference_id)
    if stripe_account:
        options["stripe_account"] = stripe_account

    try:
        session = stripe.checkout.Session.create(**options)
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout session creation failed: %s", exc)
        raise StripeServiceError(str(exc)) from exc

    return {"id": session.id, "url": session.url}


def create_subscriber_checkout_session(subscriber: "Subscriber", plan: "Plan") -> Dict[str, Any]:
    """Create a one-off Checkout session paying for ``plan`` on behalf of ``subscriber``.

    Sessions for projects with a connected account are created on that
    account so the payment lands with the channel owner and the webhook
    arrives on the connect endpoint.
    """

    project = subscriber.project
    metadata = {
        "project_id": project.id,
        "plan_id": plan.id,
        "subscriber_id": subscriber.id,
        "telegram_user_id": subscriber.telegram_user_id,
    }
    line_items = [
        {
            "price_data": {
                "currency": plan.currency.lower(),
                "unit_amount": plan.price_in_minor_units,
                "product_data": {
                    "name": f"{project.project_name} - {plan.plan_name}",
                    "description": plan.description or f"{plan.duration_days} days of channel access",
                },
            },
            "quantity": 1,
        }
    ]
    return create_checkout_session(
        success_url=_append_checkout_params(_default_success_url(), {"subscriber": subscriber.id}, include_session=True),
        cancel_url=_append_checkout_params(_default_cancel_url(), {"subscriber": subscriber.id}),
        line_items=line_items,
        metadata=metadata,
        client_reference_id=str(subscriber.id),
        stripe_account=project.stripe_account_id or None,
    )


def parse_event(payload: bytes | str, sig_header: str, secret: str) -> Dict[str, Any]:
    """Verify the ``Stripe-Signature`` header against ``secret`` and decode the event.

    The secret is always passed explicitly; direct and connect integrations
    sign with different secrets.
    """

    if not sig_header:
        raise StripeWebhookSignatureError("Stripe-Signature header is missing.")
    if not secret:
        raise StripeConfigurationError("Webhook signing secret is not configured.")

    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise StripeServiceError("Webhook payload is not valid UTF-8.") from exc

    tolerance = getattr(settings, "STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise StripeWebhookSignatureError("Stripe webhook signature verification failed.") from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        logger.error("Received malformed Stripe webhook payload: %s", exc)
        raise StripeServiceError("Malformed Stripe webhook payload.") from exc
    if not isinstance(event, dict):
        raise StripeServiceError("Malformed Stripe webhook payload.")
    return event
