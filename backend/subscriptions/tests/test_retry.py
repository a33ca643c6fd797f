import pytest

from subscriptions.exceptions import (
    RateLimitedError,
    RetryExhaustedError,
    TerminalGatewayError,
    TransientGatewayError,
)
from subscriptions.services.retry import backoff_delay, with_retry


class FlakyOperation:
    def __init__(self, failures, result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(attempt, 1.5) for attempt in (1, 2, 3)] == [1.5, 3.0, 6.0]


def test_transient_errors_are_retried_with_exponential_backoff():
    sleeps = []
    operation = FlakyOperation([TransientGatewayError("boom"), TransientGatewayError("boom")])

    result = with_retry(operation, "sendMessage:1", max_attempts=3, base_delay=1.0, sleep=sleeps.append)

    assert result == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_terminal_errors_are_not_retried():
    sleeps = []
    operation = FlakyOperation([TerminalGatewayError("Bad Request: chat not found", error_code=400)])

    with pytest.raises(TerminalGatewayError):
        with_retry(operation, "banChatMember:1", max_attempts=3, base_delay=1.0, sleep=sleeps.append)

    assert operation.calls == 1
    assert sleeps == []


def test_exhaustion_wraps_the_last_error():
    last = TransientGatewayError("third")
    operation = FlakyOperation([TransientGatewayError("first"), TransientGatewayError("second"), last])

    with pytest.raises(RetryExhaustedError) as excinfo:
        with_retry(operation, "getChatMember:1", max_attempts=3, base_delay=0, sleep=lambda _: None)

    assert operation.calls == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.last_error is last
    assert excinfo.value.__cause__ is last


def test_rate_limit_hint_overrides_shorter_backoff():
    sleeps = []
    operation = FlakyOperation([RateLimitedError("Too Many Requests", retry_after=7)])

    with_retry(operation, "sendMessage:1", max_attempts=2, base_delay=1.0, sleep=sleeps.append)

    assert sleeps == [7.0]


def test_unrelated_exceptions_propagate_immediately():
    operation = FlakyOperation([KeyError("missing")])

    with pytest.raises(KeyError):
        with_retry(operation, "sendMessage:1", max_attempts=3, base_delay=0, sleep=lambda _: None)

    assert operation.calls == 1


def test_attempts_and_delay_default_to_settings(settings):
    settings.GATEWAY_RETRY_ATTEMPTS = 2
    settings.GATEWAY_RETRY_BASE_DELAY_SECONDS = 0.5
    sleeps = []
    operation = FlakyOperation([TransientGatewayError("a"), TransientGatewayError("b")])

    with pytest.raises(RetryExhaustedError):
        with_retry(operation, "sendMessage:1", sleep=sleeps.append)

    assert operation.calls == 2
    assert sleeps == [0.5]
