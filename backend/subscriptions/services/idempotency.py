"""Ledger of handled external events keyed by ``(event_source, event_id)``."""
from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional

from subscriptions.models import Subscriber, WebhookEvent


def payload_digest(payload: bytes | str) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload or b"").hexdigest()


def is_processed(source: str, event_id: str) -> bool:
    return WebhookEvent.objects.filter(event_source=source, event_id=event_id).exists()


def record_event(
    *,
    source: str,
    event_id: str,
    event_type: str,
    status: str = WebhookEvent.Status.PROCESSED,
    result: Optional[Dict[str, Any]] = None,
    payload_hash: str = "",
    subscriber: Optional[Subscriber] = None,
) -> WebhookEvent:
    """Insert the ledger row.

    Raises ``IntegrityError`` when the event was already recorded; callers
    run this inside the transaction that applies the event's effect so both
    commit or neither does.
    """

    return WebhookEvent.objects.create(
        event_source=source,
        event_id=event_id,
        event_type=event_type or "",
        status=status,
        result=result or {},
        payload_hash=payload_hash or "",
        subscriber=subscriber,
    )
