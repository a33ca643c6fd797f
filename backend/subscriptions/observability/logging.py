"""Structured logging helper for subscription lifecycle events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("subscriptions")


def log_subscription_event(*, message: str, subscriber_id: Optional[str] = None, project_id: Optional[str] = None,
                           actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"message": message}
    if subscriber_id:
        payload["subscriber_id"] = str(subscriber_id)
    if project_id:
        payload["project_id"] = str(project_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.info(payload)
