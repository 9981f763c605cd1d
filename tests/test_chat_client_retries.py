"""
Retry/backoff behaviour of the chat-completion client.

requests.post and time.sleep are replaced so no network call or real delay
happens; every test counts the HTTP attempts it observed.
"""
import json
import logging

import pytest
import requests

from flashcard_ai.llm.client import ChatCompletionClient
from flashcard_ai.llm.types import ErrorKind, ServiceError


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload or {})


def _completion(content="hello"):
    return {
        "id": "gen-1",
        "model": "test/model",
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        "choices": [{"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}],
    }


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr("flashcard_ai.llm.client.time.sleep", recorded.append)
    return recorded


def _install_responses(monkeypatch, responses):
    """Each entry is a DummyResponse or an exception instance to raise."""
    calls = []

    def fake_post(url, headers, json, timeout):
        calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        outcome = responses[min(len(calls), len(responses)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr("flashcard_ai.llm.client.requests.post", fake_post)
    return calls


def test_rate_limited_twice_then_success(monkeypatch, sleeps):
    calls = _install_responses(
        monkeypatch,
        [
            DummyResponse(429, {"error": {"message": "rate limited"}}),
            DummyResponse(429, {"error": {"message": "rate limited"}}),
            DummyResponse(200, _completion("done")),
        ],
    )
    client = ChatCompletionClient(api_key="k", max_retries=2, retry_delay_ms=100, backoff_multiplier=3)

    result = client.send_chat_message("hi")

    assert result.content == "done"
    assert len(calls) == 3
    assert sleeps == pytest.approx([0.1, 0.3])


def test_server_error_on_every_attempt_surfaces_api_error(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [DummyResponse(500, {"error": "upstream exploded"})])
    client = ChatCompletionClient(api_key="k", max_retries=1, retry_delay_ms=10)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    err = exc_info.value
    assert err.kind is ErrorKind.API_ERROR
    assert err.status == 500
    assert str(err) == "upstream exploded"
    assert err.detail == {"error": "upstream exploded"}
    assert len(calls) == 2
    assert len(sleeps) == 1


@pytest.mark.parametrize("status", [408, 409, 425, 429, 502, 503, 504, 524, 599])
def test_retriable_statuses_use_all_attempts(monkeypatch, sleeps, status):
    calls = _install_responses(monkeypatch, [DummyResponse(status, {"message": "busy"})])
    client = ChatCompletionClient(api_key="k", max_retries=2, retry_delay_ms=1)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.status == status
    assert len(calls) == 3


@pytest.mark.parametrize("status", [400, 403, 404, 422])
def test_non_retriable_status_makes_one_attempt(monkeypatch, sleeps, status):
    calls = _install_responses(monkeypatch, [DummyResponse(status, {"error": {"message": "bad request"}})])
    client = ChatCompletionClient(api_key="k", max_retries=3)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.API_ERROR
    assert str(exc_info.value) == "bad request"
    assert len(calls) == 1
    assert sleeps == []


def test_unauthorized_is_a_configuration_error(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [DummyResponse(401, {"error": {"message": "No auth credentials found"}})])
    client = ChatCompletionClient(api_key="wrong", max_retries=2)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.CONFIGURATION_ERROR
    assert exc_info.value.status == 401
    assert len(calls) == 1
    assert sleeps == []


def test_missing_api_key_fails_before_any_request(monkeypatch, sleeps, tmp_path):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    calls = _install_responses(monkeypatch, [DummyResponse(200, _completion())])
    client = ChatCompletionClient(env_file=tmp_path / "missing.env")

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.CONFIGURATION_ERROR
    assert calls == []


def test_malformed_success_body_is_not_retried(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [DummyResponse(200, text="<html>oops</html>")])
    client = ChatCompletionClient(api_key="k", max_retries=2)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.API_ERROR
    assert exc_info.value.detail == "<html>oops</html>"
    assert len(calls) == 1


def test_non_json_error_body_becomes_message(monkeypatch, sleeps):
    _install_responses(monkeypatch, [DummyResponse(418, text="I'm a teapot")])
    client = ChatCompletionClient(api_key="k", max_retries=0)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert str(exc_info.value) == "I'm a teapot"
    assert exc_info.value.detail == {"message": "I'm a teapot"}


def test_timeouts_exhaust_into_network_error(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [requests.Timeout("read timed out")])
    client = ChatCompletionClient(api_key="k", max_retries=1, timeout_ms=2500, retry_delay_ms=50)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    err = exc_info.value
    assert err.kind is ErrorKind.NETWORK_ERROR
    assert isinstance(err.cause, requests.Timeout)
    assert len(calls) == 2
    assert calls[0]["timeout"] == pytest.approx(2.5)
    assert sleeps == pytest.approx([0.05])


def test_connection_error_then_success(monkeypatch, sleeps):
    calls = _install_responses(
        monkeypatch,
        [requests.ConnectionError("connection reset"), DummyResponse(200, _completion("recovered"))],
    )
    client = ChatCompletionClient(api_key="k", max_retries=2, retry_delay_ms=10)

    result = client.send_chat_message("hi")

    assert result.content == "recovered"
    assert len(calls) == 2
    assert len(sleeps) == 1


def test_connection_errors_exhaust_into_network_error(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [requests.ConnectionError("dns failure")])
    client = ChatCompletionClient(api_key="k", max_retries=2, retry_delay_ms=10)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.NETWORK_ERROR
    assert isinstance(exc_info.value.cause, requests.ConnectionError)
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_other_transport_errors_fail_immediately(monkeypatch, sleeps):
    calls = _install_responses(monkeypatch, [requests.exceptions.InvalidURL("bad url")])
    client = ChatCompletionClient(api_key="k", max_retries=2)

    with pytest.raises(ServiceError) as exc_info:
        client.send_chat_message("hi")

    assert exc_info.value.kind is ErrorKind.NETWORK_ERROR
    assert len(calls) == 1
    assert sleeps == []


def test_retries_are_logged(monkeypatch, sleeps, caplog):
    _install_responses(
        monkeypatch,
        [DummyResponse(503, {"message": "unavailable"}), DummyResponse(200, _completion())],
    )
    client = ChatCompletionClient(api_key="k", max_retries=1)

    with caplog.at_level(logging.INFO, logger="flashcard_ai.llm.client"):
        client.send_chat_message("hi")

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "status 503" in warnings[0].getMessage()


class ConsoleLogger:
    def __init__(self):
        self.lines = []

    def info(self, msg, *args):
        self.lines.append(("info", msg % args))

    def warn(self, msg, *args):
        self.lines.append(("warn", msg % args))

    def error(self, msg, *args):
        self.lines.append(("error", msg % args))


def test_console_style_logger_keeps_retrying(monkeypatch, sleeps):
    calls = _install_responses(
        monkeypatch,
        [DummyResponse(429, {"message": "slow down"}), DummyResponse(200, _completion("after retry"))],
    )
    logger = ConsoleLogger()
    client = ChatCompletionClient(api_key="k", max_retries=2, logger=logger)

    result = client.send_chat_message("hi")

    assert result.content == "after retry"
    assert len(calls) == 2
    assert [level for level, _ in logger.lines].count("warn") == 1
