from unittest import mock

import pytest
import requests

from subscriptions.exceptions import RetryExhaustedError, TerminalGatewayError
from subscriptions.services.telegram_gateway import TelegramGateway


def _response(body=None, status_code=200):
    response = mock.Mock(status_code=status_code)
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


def _gateway(*responses):
    session = mock.Mock()
    session.post.side_effect = list(responses)
    return TelegramGateway("123:abc", base_url="https://telegram.test", timeout=4, session=session), session


def test_empty_bot_token_is_rejected():
    with pytest.raises(TerminalGatewayError):
        TelegramGateway("")


def test_send_message_posts_html_with_timeout():
    gateway, session = _gateway(_response({"ok": True, "result": {"message_id": 9}}))

    result = gateway.send_message(42, "<b>hi</b>", {"inline_keyboard": []})

    assert result.ok
    assert result.value == {"message_id": 9}
    url = session.post.call_args.args[0]
    kwargs = session.post.call_args.kwargs
    assert url == "https://telegram.test/bot123:abc/sendMessage"
    assert kwargs["timeout"] == 4
    assert kwargs["json"]["parse_mode"] == "HTML"
    assert kwargs["json"]["chat_id"] == 42


def test_send_message_retries_server_errors():
    gateway, session = _gateway(
        _response({"ok": False}, status_code=502),
        _response({"ok": True, "result": {"message_id": 1}}),
    )

    assert gateway.send_message(42, "hello").ok
    assert session.post.call_count == 2


def test_send_message_permanent_rejection_is_success_with_warning():
    gateway, session = _gateway(
        _response({"ok": False, "error_code": 403, "description": "Forbidden: bot was blocked by the user"}, 403)
    )

    result = gateway.send_message(42, "hello")

    assert result.ok
    assert "blocked" in result.warning
    assert session.post.call_count == 1


def test_send_message_raises_after_network_failures(settings):
    settings.GATEWAY_RETRY_ATTEMPTS = 3
    gateway, session = _gateway(
        requests.ConnectionError("down"),
        requests.Timeout("slow"),
        requests.ConnectionError("down"),
    )

    with pytest.raises(RetryExhaustedError):
        gateway.send_message(42, "hello")
    assert session.post.call_count == 3


def test_rate_limited_call_is_retried():
    gateway, session = _gateway(
        _response({"ok": False, "error_code": 429, "description": "Too Many Requests",
                   "parameters": {"retry_after": 0}}, 429),
        _response({"ok": True, "result": {"invite_link": "https://t.me/+abc"}}),
    )

    result = gateway.create_invite_link("-100111", name="sub-42")

    assert result.ok
    assert result.value == "https://t.me/+abc"
    payload = session.post.call_args.kwargs["json"]
    assert payload["member_limit"] == 1
    assert payload["expire_date"] > 0


def test_invite_rejection_is_a_failure():
    gateway, _ = _gateway(
        _response({"ok": False, "error_code": 400, "description": "Bad Request: not enough rights"}, 400)
    )

    result = gateway.create_invite_link("-100111")

    assert not result.ok
    assert result.error_code == 400


def test_ban_then_unban_removes_member():
    gateway, session = _gateway(
        _response({"ok": True, "result": True}),
        _response({"ok": True, "result": True}),
    )

    assert gateway.ban_then_unban("-100111", 42).ok
    methods = [call.args[0].rsplit("/", 1)[1] for call in session.post.call_args_list]
    assert methods == ["banChatMember", "unbanChatMember"]
    assert session.post.call_args.kwargs["json"]["only_if_banned"] is True


def test_ban_of_non_member_is_success_with_warning():
    gateway, session = _gateway(
        _response({"ok": False, "error_code": 400, "description": "Bad Request: USER_NOT_PARTICIPANT user is not a member"}, 400)
    )

    result = gateway.ban_then_unban("-100111", 42)

    assert result.ok
    assert result.warning
    assert session.post.call_count == 1


def test_ban_rejected_for_missing_rights_is_handled_with_warning():
    gateway, session = _gateway(
        _response(
            {"ok": False, "error_code": 400, "description": "Bad Request: not enough rights to restrict/unrestrict chat member"},
            400,
        )
    )

    result = gateway.ban_then_unban("-100111", 42)

    assert result.ok
    assert "not enough rights" in result.warning
    assert result.error_code == 400
    assert session.post.call_count == 1


def test_ban_forbidden_is_handled_with_warning():
    gateway, _ = _gateway(
        _response({"ok": False, "error_code": 403, "description": "Forbidden: bot is not a member of the channel chat"}, 403)
    )

    result = gateway.ban_then_unban("-100111", 42)

    assert result.ok
    assert result.error_code == 403


def test_ban_exhausting_retries_propagates(settings):
    settings.GATEWAY_RETRY_ATTEMPTS = 3
    gateway, _ = _gateway(*[_response({"ok": False, "error_code": 502, "description": "Bad Gateway"}, 502)] * 3)

    with pytest.raises(RetryExhaustedError):
        gateway.ban_then_unban("-100111", 42)


def test_unban_failure_does_not_undo_removal():
    gateway, _ = _gateway(
        _response({"ok": True, "result": True}),
        _response({"ok": False, "error_code": 400, "description": "Bad Request: method is available only for supergroups"}, 400),
    )

    assert gateway.ban_then_unban("-100111", 42).ok


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"ok": True, "result": {"status": "member"}}, "member"),
        ({"ok": True, "result": {"status": "left"}}, "left"),
        ({"ok": True, "result": {"status": "something_new"}}, "unknown"),
        ({"ok": False, "error_code": 400, "description": "Bad Request: user not found"}, "never_joined"),
    ],
)
def test_member_status_mapping(body, expected):
    gateway, _ = _gateway(_response(body, 200 if body["ok"] else 400))

    assert gateway.get_member_status("-100111", 42).value == expected


def test_member_status_unknown_after_retry_exhaustion(settings):
    settings.GATEWAY_RETRY_ATTEMPTS = 2
    gateway, _ = _gateway(_response(None, 200), _response(None, 200))

    result = gateway.get_member_status("-100111", 42)

    assert not result.ok
    assert result.value == "unknown"
