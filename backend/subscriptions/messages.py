"""Subscriber-facing Telegram messages (HTML parse mode)."""
from __future__ import annotations

from html import escape
from typing import Any, Dict, Optional, Tuple

Message = Tuple[str, Optional[Dict[str, Any]]]


def _date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "N/A"


def _plan_name(subscriber) -> str:
    plan = getattr(subscriber, "plan", None)
    return escape(plan.plan_name) if plan else "Subscription"


def _project_name(subscriber) -> str:
    return escape(subscriber.project.project_name)


def _support_line(subscriber, prefix: str = "📞 Support") -> str:
    contact = subscriber.project.support_contact
    return f"\n\n{prefix}: {escape(contact)}" if contact else ""


def _join_keyboard(invite_link: str) -> Dict[str, Any]:
    return {"inline_keyboard": [[{"text": "🔗 Join Channel", "url": invite_link}]]}


def access_granted(subscriber, invite_link: str) -> Message:
    if not invite_link:
        text = (
            "🎉 <b>Payment Approved!</b>\n\n"
            f"Your subscription to <b>{_project_name(subscriber)}</b> has been activated.\n\n"
            f"📦 Plan: <b>{_plan_name(subscriber)}</b>\n\n"
            "⚠️ Could not generate invite link. Please contact support."
            f"{_support_line(subscriber)}"
        )
        return text, None
    text = (
        "🎉 <b>Payment Approved!</b>\n\n"
        f"Your subscription to <b>{_project_name(subscriber)}</b> has been activated.\n\n"
        f"📦 Plan: <b>{_plan_name(subscriber)}</b>\n"
        f"📅 Expires: <b>{_date(subscriber.expiry_date)}</b>\n\n"
        "👇 Click below to join the channel:"
    )
    return text, _join_keyboard(invite_link)


def reactivated(subscriber, invite_link: str) -> Message:
    text = (
        "✅ <b>Subscription Reactivated!</b>\n\n"
        f"Your access to <b>{_project_name(subscriber)}</b> has been restored.\n\n"
    )
    if not invite_link:
        return text + "⚠️ Could not generate invite link. Please contact support.", None
    return text + "👇 Click below to rejoin the channel:", _join_keyboard(invite_link)


def extended(subscriber) -> Message:
    text = (
        "✅ <b>Subscription Extended!</b>\n\n"
        f"Your subscription to <b>{_project_name(subscriber)}</b> has been extended.\n\n"
        f"📦 Plan: <b>{_plan_name(subscriber)}</b>\n"
        f"📅 New Expiry: <b>{_date(subscriber.expiry_date)}</b>\n\n"
        "Thank you for your continued support!"
    )
    return text, None


def expiring_soon(subscriber, days_left: int) -> Message:
    text = (
        "⚠️ <b>Subscription Expiring Soon!</b>\n\n"
        f"Your access to <b>{_project_name(subscriber)}</b> expires in <b>{days_left} days</b>.\n\n"
        f"📅 Expiry date: <b>{_date(subscriber.expiry_date)}</b>\n\n"
        "Use /renew to extend your subscription and keep your access."
    )
    return text, None


def final_warning(subscriber) -> Message:
    text = (
        "🚨 <b>FINAL WARNING - Subscription Expires Tomorrow!</b>\n\n"
        f"Your access to <b>{_project_name(subscriber)}</b> expires <b>TOMORROW</b>.\n\n"
        "⚡ <b>Act now!</b> Type /renew to keep your access."
        f"{_support_line(subscriber)}"
    )
    return text, None


def expired(subscriber) -> Message:
    text = (
        "❌ <b>Subscription Expired</b>\n\n"
        f"Your access to <b>{_project_name(subscriber)}</b> has ended.\n\n"
        "Use /renew to reactivate your subscription."
    )
    return text, None


def rejected(subscriber, reason: str = "") -> Message:
    text = (
        "❌ <b>Payment Not Approved</b>\n\n"
        f"Your payment for <b>{_project_name(subscriber)}</b> could not be verified.\n\n"
    )
    if reason:
        text += f"📝 Reason: {escape(reason)}\n\n"
    text += "Please try again with valid payment proof using /start."
    text += _support_line(subscriber, "📞 Need help? Contact")
    return text, None


def suspended(subscriber, reason: str = "") -> Message:
    text = (
        "⚠️ <b>Subscription Suspended</b>\n\n"
        f"Your access to <b>{_project_name(subscriber)}</b> has been suspended."
    )
    if reason:
        text += f"\n\n📝 Reason: {escape(reason)}"
    text += _support_line(subscriber, "📞 Contact support")
    return text, None


def payment_received(subscriber, invite_link: str = "", *, extension: bool = False) -> Message:
    text = "🎉 <b>Payment Successful!</b>\n\n"
    if extension:
        text += "✅ Your subscription has been extended!\n"
    else:
        text += "✅ Your subscription is now active!\n"
    text += (
        f"📦 Plan: {_plan_name(subscriber)}\n"
        f"📅 Valid until: {_date(subscriber.expiry_date)}"
    )
    if invite_link:
        text += "\n\n🔗 <b>Join the channel:</b>\n" + invite_link + "\n\n⚠️ This link can only be used once."
        return text, _join_keyboard(invite_link)
    if not extension:
        text += "\n\nOur team will grant you access shortly."
    return text, None
