"""Channel access and notification side effects for a single subscriber.

Each helper talks to the Telegram gateway through the retry executor and
reports a ``GatewayResult`` instead of raising, so callers decide whether a
failure is queued (revoke, credential) or only logged (notifications).
"""
from __future__ import annotations

import logging
from typing import Optional

from django.utils import timezone

from subscriptions.exceptions import GatewayError, RetryExhaustedError
from subscriptions.messages import Message
from subscriptions.models import Subscriber
from subscriptions.services import telegram_gateway
from subscriptions.services.state_machine import ABSENT_MEMBERSHIP, PRESENT_MEMBERSHIP
from subscriptions.services.telegram_gateway import GatewayResult, TelegramGateway

logger = logging.getLogger(__name__)


def _gateway(subscriber: Subscriber, gateway: Optional[TelegramGateway]) -> TelegramGateway:
    return gateway or telegram_gateway.get_gateway(subscriber.project)


def send_notification(subscriber: Subscriber, message: Message, *,
                      gateway: Optional[TelegramGateway] = None) -> GatewayResult:
    """Best-effort delivery; a failure is logged and reported, never raised."""

    text, reply_markup = message
    try:
        return _gateway(subscriber, gateway).send_message(subscriber.telegram_user_id, text, reply_markup)
    except (GatewayError, RetryExhaustedError) as exc:
        logger.warning("Notification to subscriber %s not delivered: %s", subscriber.pk, exc)
        return GatewayResult(ok=False, warning=str(exc))


def revoke_access(subscriber: Subscriber, *, gateway: Optional[TelegramGateway] = None) -> GatewayResult:
    """Remove the subscriber from the project channel."""

    try:
        result = _gateway(subscriber, gateway).ban_then_unban(subscriber.project.channel_id, subscriber.telegram_user_id)
    except (GatewayError, RetryExhaustedError) as exc:
        logger.error("Revoking channel access for subscriber %s failed: %s", subscriber.pk, exc)
        return GatewayResult(ok=False, warning=str(exc))
    if not result.ok:
        logger.error("Revoking channel access for subscriber %s rejected: %s", subscriber.pk, result.warning)
    return result


def issue_invite(subscriber: Subscriber, *, gateway: Optional[TelegramGateway] = None) -> GatewayResult:
    """Mint a single-use invite link and store it on the subscriber."""

    try:
        result = _gateway(subscriber, gateway).create_invite_link(
            subscriber.project.channel_id,
            name=f"sub-{subscriber.telegram_user_id}",
        )
    except (GatewayError, RetryExhaustedError) as exc:
        logger.error("Invite link for subscriber %s could not be created: %s", subscriber.pk, exc)
        return GatewayResult(ok=False, warning=str(exc))
    if not result.ok:
        return result

    subscriber.invite_link = result.value
    Subscriber.objects.filter(pk=subscriber.pk).update(invite_link=result.value, updated_at=timezone.now())
    return result


def record_membership(subscriber: Subscriber, membership_status: str, *, now=None) -> Subscriber:
    """Persist a membership observation without touching billing status."""

    now = now or timezone.now()
    joined = membership_status in PRESENT_MEMBERSHIP
    changes = {
        "channel_membership_status": membership_status,
        "channel_joined": joined,
        "last_membership_check": now,
        "updated_at": now,
    }
    if joined and subscriber.channel_joined_at is None:
        changes["channel_joined_at"] = now
    Subscriber.objects.filter(pk=subscriber.pk).update(**changes)
    for field, value in changes.items():
        setattr(subscriber, field, value)
    return subscriber


def observe_membership(subscriber: Subscriber, *, gateway: Optional[TelegramGateway] = None, now=None) -> str:
    """Read the subscriber's channel membership and record it."""

    try:
        result = _gateway(subscriber, gateway).get_member_status(
            subscriber.project.channel_id, subscriber.telegram_user_id
        )
    except (GatewayError, RetryExhaustedError) as exc:
        logger.warning("Membership check for subscriber %s failed: %s", subscriber.pk, exc)
        result = GatewayResult(ok=False, value="unknown", warning=str(exc))
    membership_status = result.value or "unknown"
    record_membership(subscriber, membership_status, now=now)
    return membership_status


def is_absent(membership_status: str) -> bool:
    return membership_status in ABSENT_MEMBERSHIP
