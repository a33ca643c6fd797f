"""Celery tasks for the scheduled subscription passes."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from celery import shared_task

from subscriptions.services import drain, sweep

logger = logging.getLogger(__name__)


@shared_task(queue="subscriptions")
def run_subscription_sweep() -> Dict[str, Dict[str, int]]:
    """Send expiry reminders and expire lapsed subscribers."""

    return sweep.run_subscription_sweep()


@shared_task(queue="subscriptions")
def drain_failed_operations(limit: Optional[int] = None) -> Dict[str, int]:
    """Re-attempt queued revocations and credential grants that are due."""

    return drain.drain_failed_operations(limit=limit)


@shared_task(queue="subscriptions")
def expire_client_subscriptions() -> Dict[str, int]:
    return sweep.expire_client_subscriptions()
