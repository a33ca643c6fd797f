"""Shared fakes and payload builders for subscription tests."""
from __future__ import annotations

import hashlib
import hmac
import json
import time

from subscriptions.services.telegram_gateway import GatewayResult

WEBHOOK_SECRET = "whsec_direct_test"
CONNECT_WEBHOOK_SECRET = "whsec_connect_test"

class FakeGateway:
    """In-memory stand-in for ``TelegramGateway`` recording every call."""

    def __init__(self):
        self.sent = []
        self.invites = []
        self.revoked = []
        self.member_checks = []
        self.send_ok = True
        self.invite_ok = True
        self.revoke_ok = True
        self.member_status = "member"
        self._invite_counter = 0

    def send_message(self, chat_id, text, reply_markup=None):
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup})
        if not self.send_ok:
            return GatewayResult(ok=False, warning="send failed")
        return GatewayResult(ok=True, value={"message_id": len(self.sent)})

    def create_invite_link(self, channel_id, *, name="", member_limit=1, expire_date=None):
        self.invites.append({"channel_id": channel_id, "name": name, "member_limit": member_limit})
        if not self.invite_ok:
            return GatewayResult(ok=False, warning="invite failed")
        self._invite_counter += 1
        return GatewayResult(ok=True, value=f"https://t.me/+invite{self._invite_counter}")

    def ban_then_unban(self, channel_id, user_id):
        self.revoked.append({"channel_id": channel_id, "user_id": user_id})
        if not self.revoke_ok:
            return GatewayResult(ok=False, warning="banChatMember:1 failed after 3 attempts")
        return GatewayResult(ok=True)

    def get_member_status(self, channel_id, user_id):
        self.member_checks.append({"channel_id": channel_id, "user_id": user_id})
        return GatewayResult(ok=True, value=self.member_status)

    def texts_to(self, user_id):
        return [message["text"] for message in self.sent if message["chat_id"] == user_id]


def sign_payload(payload: str, secret: str, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(subscriber, *, event_id="evt_1", event_type="checkout.session.completed", plan=None,
                   account=None, project_id=None, payment_status="paid"):
    metadata = {
        "project_id": str(project_id or subscriber.project_id),
        "subscriber_id": str(subscriber.pk),
        "telegram_user_id": str(subscriber.telegram_user_id),
    }
    if plan is not None:
        metadata["plan_id"] = str(plan.pk)
    event = {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "client_reference_id": str(subscriber.pk),
                "payment_status": payment_status,
                "amount_total": 1999,
                "currency": "usd",
                "metadata": metadata,
            }
        },
    }
    if account:
        event["account"] = account
    return event


def post_event(client, url, event, secret):
    payload = json.dumps(event)
    return client.post(
        url,
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=sign_payload(payload, secret),
    )
