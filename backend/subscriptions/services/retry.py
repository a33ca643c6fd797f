"""Retry executor shared by every external call."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from django.conf import settings

from subscriptions.exceptions import (
    RateLimitedError,
    RetryExhaustedError,
    TerminalGatewayError,
    TransientGatewayError,
)
from subscriptions.observability.metrics import GATEWAY_RETRY_COUNT

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (TransientGatewayError,)


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before the retry following ``attempt`` (1-based)."""

    return base_delay * (2 ** (attempt - 1))


def with_retry(
    operation: Callable[[], T],
    name: str,
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation`` and retry transient failures with exponential backoff.

    ``TerminalGatewayError`` and anything that is not a transient gateway error
    propagates immediately. Once ``max_attempts`` is reached the last error is
    wrapped in ``RetryExhaustedError``.
    """

    if max_attempts is None:
        max_attempts = getattr(settings, "GATEWAY_RETRY_ATTEMPTS", 3)
    if base_delay is None:
        base_delay = getattr(settings, "GATEWAY_RETRY_BASE_DELAY_SECONDS", 1.0)
    max_attempts = max(1, int(max_attempts))
    sleep = sleep or time.sleep

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except TerminalGatewayError:
            raise
        except RETRYABLE_ERRORS as exc:
            last_error = exc
            if attempt >= max_attempts:
                break
            delay = backoff_delay(attempt, base_delay)
            if isinstance(exc, RateLimitedError):
                delay = max(exc.retry_after, delay)
            logger.warning(
                "%s attempt %s/%s failed (%s); retrying in %.2fs",
                name,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            GATEWAY_RETRY_COUNT.labels(operation=name.split(":", 1)[0]).inc()
            if delay > 0:
                sleep(delay)

    logger.error("%s failed after %s attempts: %s", name, max_attempts, last_error)
    raise RetryExhaustedError(name, max_attempts, last_error) from last_error
