"""Exception taxonomy for the subscription engine."""
from __future__ import annotations

from typing import Iterable, Optional


class SubscriptionEngineError(RuntimeError):
    """Base class for engine errors."""


# Webhook / request errors. Terminal: logged, never retried.

class WebhookError(SubscriptionEngineError):
    status_code = 400
    code = "webhook_error"


class WebhookAuthenticationError(WebhookError):
    """Signature header missing or not valid for the configured secret."""

    status_code = 401
    code = "invalid_signature"


class WebhookValidationError(WebhookError):
    """Payload is malformed or lacks required references."""

    status_code = 400
    code = "invalid_payload"


class CrossTenantError(WebhookError):
    """The referenced subscriber does not belong to the resolved project."""

    status_code = 400
    code = "cross_tenant"


class EntityNotFound(WebhookError):
    status_code = 404
    code = "not_found"


class RateLimitExceeded(WebhookError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int):
        super().__init__(f"Rate limit exceeded; retry after {retry_after}s")
        self.retry_after = retry_after


# Gateway errors

class GatewayError(SubscriptionEngineError):
    """An external call failed."""

    def __init__(self, message: str, *, error_code: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code


class TransientGatewayError(GatewayError):
    """Network failure, timeout or 5xx; safe to retry."""


class RateLimitedError(TransientGatewayError):
    """The remote side asked us to back off for ``retry_after`` seconds."""

    def __init__(self, message: str, *, retry_after: float = 0, error_code: Optional[int] = 429):
        super().__init__(message, error_code=error_code)
        self.retry_after = float(retry_after or 0)


class TerminalGatewayError(GatewayError):
    """Permanent rejection (bad request, forbidden, user not a member)."""


class RetryExhaustedError(SubscriptionEngineError):
    """Raised once the retry budget for a named operation is spent."""

    def __init__(self, name: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"{name} failed after {attempts} attempts: {last_error}")
        self.name = name
        self.attempts = attempts
        self.last_error = last_error


# Lifecycle errors

class InvalidTransition(SubscriptionEngineError):
    """No transition exists for this (event, status) pair."""

    def __init__(self, event: str, status: str):
        super().__init__(f"Event '{event}' is not allowed from status '{status}'")
        self.event = event
        self.status = status


class TransitionConflict(SubscriptionEngineError):
    """The subscriber changed status between read and conditional write."""

    def __init__(self, subscriber_id, event: str, allowed_from: Iterable[str]):
        allowed = ", ".join(sorted(allowed_from))
        super().__init__(f"Subscriber {subscriber_id} left [{allowed}] before '{event}' could be applied")
        self.subscriber_id = subscriber_id
        self.event = event
        self.allowed_from = tuple(allowed_from)
