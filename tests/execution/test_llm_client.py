"""Tests for the LLM transport."""

import json
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from execution.llm_client import (
    JSON_MODE,
    LLMClientError,
    LLMResponse,
    LLMTimeoutError,
    LLMUnavailableError,
    chat,
    complete_json,
    is_available,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _completion(content="ok", finish_reason="stop", model="gpt-4o-mini"):
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = content
    completion.choices[0].finish_reason = finish_reason
    completion.model = model
    completion.usage.prompt_tokens = 12
    completion.usage.completion_tokens = 7
    return completion


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setattr("execution.llm_client.OPENAI_API_KEY", "sk-test")


@pytest.fixture
def sdk(api_key):
    """Patch the SDK client class; yields the mocked OpenAI constructor."""
    with patch("execution.llm_client.openai.OpenAI") as mock_openai:
        mock_openai.return_value.chat.completions.create.return_value = _completion()
        yield mock_openai


def _create_kwargs(sdk):
    return sdk.return_value.chat.completions.create.call_args[1]


class TestIsAvailable:
    def test_available_with_key(self, api_key):
        assert is_available() is True

    @pytest.mark.parametrize("key", ["", None])
    def test_unavailable_without_key(self, monkeypatch, key):
        monkeypatch.setattr("execution.llm_client.OPENAI_API_KEY", key)
        assert is_available() is False


class TestChat:
    def test_no_key_raises_unavailable(self):
        with pytest.raises(LLMUnavailableError, match="not configured"):
            chat("system", [{"role": "user", "content": "hello"}])

    def test_reply_fields(self, sdk):
        sdk.return_value.chat.completions.create.return_value = _completion("Nice question!")
        result = chat("Coach.", [{"role": "user", "content": "Hi"}])
        assert result == LLMResponse(
            content="Nice question!",
            model="gpt-4o-mini",
            usage={"prompt_tokens": 12, "completion_tokens": 7},
            stop_reason="stop",
        )
        assert result.truncated is False

    def test_system_prompt_first(self, sdk):
        chat("Coach.", [{"role": "user", "content": "Hi"}])
        assert _create_kwargs(sdk)["messages"] == [
            {"role": "system", "content": "Coach."},
            {"role": "user", "content": "Hi"},
        ]

    def test_settings_defaults(self, sdk, monkeypatch):
        monkeypatch.setattr("execution.llm_client.LLM_MODEL", "test-model")
        monkeypatch.setattr("execution.llm_client.LLM_MAX_TOKENS", 512)
        monkeypatch.setattr("execution.llm_client.LLM_TEMPERATURE", 0.5)
        chat("system", [])
        kwargs = _create_kwargs(sdk)
        assert (kwargs["model"], kwargs["max_tokens"], kwargs["temperature"]) == ("test-model", 512, 0.5)
        assert "response_format" not in kwargs

    def test_explicit_params(self, sdk):
        chat("system", [], model="custom", max_tokens=64, temperature=0.0)
        kwargs = _create_kwargs(sdk)
        assert (kwargs["model"], kwargs["max_tokens"], kwargs["temperature"]) == ("custom", 64, 0.0)

    def test_client_never_retries(self, sdk):
        chat("system", [], timeout=2.5)
        assert sdk.call_args[1] == {"api_key": "sk-test", "max_retries": 0, "timeout": 2.5}

    def test_no_timeout_uses_sdk_default(self, sdk):
        chat("system", [])
        assert "timeout" not in sdk.call_args[1]

    def test_empty_content_becomes_empty_string(self, sdk):
        sdk.return_value.chat.completions.create.return_value = _completion(content=None)
        assert chat("system", []).content == ""

    def test_truncated_reply(self, sdk):
        sdk.return_value.chat.completions.create.return_value = _completion(finish_reason="length")
        assert chat("system", []).truncated is True


class TestErrorMapping:
    def test_timeout(self, sdk):
        sdk.return_value.chat.completions.create.side_effect = openai.APITimeoutError(request=REQUEST)
        with pytest.raises(LLMTimeoutError, match="timed out"):
            chat("system", [], timeout=1.0)

    def test_timeout_is_a_client_error(self):
        assert issubclass(LLMTimeoutError, LLMClientError)

    def test_connection_error_is_unavailable(self, sdk):
        sdk.return_value.chat.completions.create.side_effect = openai.APIConnectionError(request=REQUEST)
        with pytest.raises(LLMUnavailableError, match="unreachable"):
            chat("system", [])

    def test_api_error(self, sdk):
        sdk.return_value.chat.completions.create.side_effect = openai.APIError(
            "rate limit", request=REQUEST, body=None,
        )
        with pytest.raises(LLMClientError, match="OpenAI API error"):
            chat("system", [])


class TestCompleteJson:
    def test_sends_request_as_json_in_json_mode(self, sdk):
        complete_json("Coach.", {"action": "greeting", "stageStepId": "foundation.big_idea"}, timeout=3.0)
        kwargs = _create_kwargs(sdk)
        assert kwargs["response_format"] == JSON_MODE
        assert json.loads(kwargs["messages"][1]["content"]) == {
            "action": "greeting", "stageStepId": "foundation.big_idea",
        }
        assert sdk.call_args[1]["timeout"] == 3.0

    def test_goes_through_chat(self, api_key):
        with patch("execution.llm_client.chat") as mock_chat:
            complete_json("Coach.", {"a": 1})
        assert mock_chat.call_args[1]["response_format"] == JSON_MODE
        assert mock_chat.call_args[1]["system_prompt"] == "Coach."
