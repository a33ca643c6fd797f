"""Fixed-window request limiter backed by the Django cache."""
from __future__ import annotations

import time
from typing import Optional

from django.conf import settings
from django.core.cache import cache

from subscriptions.exceptions import RateLimitExceeded


def client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "") or "unknown"


def check_rate_limit(key: str, *, limit: Optional[int] = None, window: Optional[int] = None) -> int:
    """Count one hit for ``key``; raise ``RateLimitExceeded`` past ``limit`` per window."""

    limit = limit if limit is not None else getattr(settings, "WEBHOOK_RATE_LIMIT_REQUESTS", 100)
    window = window if window is not None else getattr(settings, "WEBHOOK_RATE_LIMIT_WINDOW_SECONDS", 60)

    now = int(time.time())
    bucket = now // window
    cache_key = f"rate-limit:{key}:{bucket}"
    cache.add(cache_key, 0, timeout=window)
    try:
        count = cache.incr(cache_key)
    except ValueError:
        # Key expired between add and incr.
        cache.set(cache_key, 1, timeout=window)
        count = 1

    if count > limit:
        raise RateLimitExceeded(retry_after=max(1, window - (now % window)))
    return count
