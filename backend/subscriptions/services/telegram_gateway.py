"""Telegram Bot API client used for channel access and subscriber messages."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from django.utils import timezone

from subscriptions.exceptions import (
    GatewayError,
    RateLimitedError,
    RetryExhaustedError,
    TerminalGatewayError,
    TransientGatewayError,
)
from subscriptions.services.retry import with_retry

logger = logging.getLogger(__name__)

BAN_DURATION_SECONDS = 60

KNOWN_MEMBER_STATUSES = {"creator", "administrator", "member", "restricted", "left", "kicked"}

# Descriptions Telegram returns when the user is simply not in the chat.
NOT_A_MEMBER_MARKERS = (
    "user is not a member",
    "user not found",
    "participant_id_invalid",
    "member not found",
)


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of a gateway operation.

    ``ok`` with a non-empty ``warning`` is the success-with-warning sentinel
    returned for permanent rejections that leave nothing to retry.
    """

    ok: bool
    value: Any = None
    warning: str = ""
    error_code: Optional[int] = None


def _is_not_a_member(exc: GatewayError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in NOT_A_MEMBER_MARKERS)


class TelegramGateway:
    """Thin wrapper over the Bot API methods the engine needs.

    Every HTTP call carries a timeout. Single calls raise classified
    ``GatewayError`` subclasses; the public methods run them through the retry
    executor and fold permanent rejections into ``GatewayResult``.
    """

    def __init__(self, bot_token: str, *, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        if not bot_token:
            raise TerminalGatewayError("Bot token is not configured for this project.")
        self.bot_token = bot_token
        self.base_url = (base_url or getattr(settings, "TELEGRAM_API_BASE_URL", "https://api.telegram.org")).rstrip("/")
        self.timeout = timeout if timeout is not None else getattr(settings, "TELEGRAM_API_TIMEOUT_SECONDS", 10.0)
        self.session = session or requests.Session()

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/bot{self.bot_token}/{method}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise TransientGatewayError(f"{method} timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientGatewayError(f"{method} request failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 500:
            raise TransientGatewayError(f"{method} returned HTTP {response.status_code}", error_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientGatewayError(f"{method} returned a non-JSON body", error_code=response.status_code) from exc

        if body.get("ok"):
            return body.get("result")

        error_code = body.get("error_code") or response.status_code
        description = body.get("description") or f"{method} rejected"
        if error_code == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after", 0)
            raise RateLimitedError(description, retry_after=retry_after)
        if error_code >= 500:
            raise TransientGatewayError(description, error_code=error_code)
        raise TerminalGatewayError(description, error_code=error_code)

    def send_message(self, chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> GatewayResult:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        try:
            result = with_retry(lambda: self._call("sendMessage", payload), f"sendMessage:{chat_id}")
        except TerminalGatewayError as exc:
            logger.warning("sendMessage to %s rejected permanently: %s", chat_id, exc)
            return GatewayResult(ok=True, warning=str(exc), error_code=exc.error_code)
        return GatewayResult(ok=True, value=result)

    def create_invite_link(self, channel_id: str, *, name: str = "", member_limit: int = 1,
                           expire_date=None) -> GatewayResult:
        if expire_date is None:
            expire_date = timezone.now() + timedelta(days=getattr(settings, "INVITE_LINK_TTL_DAYS", 7))
        payload: Dict[str, Any] = {
            "chat_id": channel_id,
            "member_limit": member_limit,
            "expire_date": int(expire_date.timestamp()),
        }
        if name:
            payload["name"] = name[:32]
        try:
            result = with_retry(lambda: self._call("createChatInviteLink", payload), f"createChatInviteLink:{channel_id}")
        except TerminalGatewayError as exc:
            logger.error("createChatInviteLink for %s rejected: %s", channel_id, exc)
            return GatewayResult(ok=False, warning=str(exc), error_code=exc.error_code)
        invite_link = (result or {}).get("invite_link")
        if not invite_link:
            return GatewayResult(ok=False, warning="Telegram returned no invite link")
        return GatewayResult(ok=True, value=invite_link)

    def ban_then_unban(self, channel_id: str, user_id: int) -> GatewayResult:
        """Remove a member while leaving them free to rejoin with a new invite."""

        until_date = int((timezone.now() + timedelta(seconds=BAN_DURATION_SECONDS)).timestamp())
        ban_payload = {"chat_id": channel_id, "user_id": user_id, "until_date": until_date}
        try:
            with_retry(lambda: self._call("banChatMember", ban_payload), f"banChatMember:{user_id}")
        except TerminalGatewayError as exc:
            if _is_not_a_member(exc):
                logger.info("User %s already not a member of %s", user_id, channel_id)
            else:
                logger.warning("banChatMember %s in %s rejected permanently: %s", user_id, channel_id, exc)
            return GatewayResult(ok=True, warning=str(exc), error_code=exc.error_code)

        unban_payload = {"chat_id": channel_id, "user_id": user_id, "only_if_banned": True}
        try:
            with_retry(lambda: self._call("unbanChatMember", unban_payload), f"unbanChatMember:{user_id}")
        except (GatewayError, RetryExhaustedError) as exc:
            logger.warning("unbanChatMember %s in %s failed after removal: %s", user_id, channel_id, exc)
        return GatewayResult(ok=True)

    def get_member_status(self, channel_id: str, user_id: int) -> GatewayResult:
        payload = {"chat_id": channel_id, "user_id": user_id}
        try:
            result = with_retry(lambda: self._call("getChatMember", payload), f"getChatMember:{user_id}")
        except TerminalGatewayError as exc:
            if _is_not_a_member(exc):
                return GatewayResult(ok=True, value="never_joined", warning=str(exc), error_code=exc.error_code)
            logger.warning("getChatMember %s in %s rejected: %s", user_id, channel_id, exc)
            return GatewayResult(ok=False, value="unknown", warning=str(exc), error_code=exc.error_code)
        except RetryExhaustedError as exc:
            return GatewayResult(ok=False, value="unknown", warning=str(exc))

        status = (result or {}).get("status", "")
        if status not in KNOWN_MEMBER_STATUSES:
            status = "unknown"
        return GatewayResult(ok=True, value=status)


def get_gateway(project) -> TelegramGateway:
    """Build the gateway for a project's bot."""

    return TelegramGateway(project.bot_token)
