"""Unit tests for execution/response_composer.py."""

import json
import time
from unittest.mock import patch

import pytest

from execution.llm_client import LLMClientError, LLMResponse, LLMUnavailableError
from execution.response_composer import (
    ACTION_CLARIFY,
    ACTION_GREETING,
    ACTION_REFINE_ITEM,
    ACTION_STAGE_INTRO,
    ACTION_STEP_PROMPT,
    ACTION_SUGGEST_ITEMS,
    ComposedResponse,
    _parse_llm_response,
    build_request,
    compose,
    get_fallback_response,
)


def _llm(payload) -> LLMResponse:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return LLMResponse(content=content, model="gpt-4o-mini", usage={}, stop_reason="stop")


class TestFallbackPath:
    def test_fallback_when_no_api_key(self, foundation_record):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            response = compose(ACTION_STEP_PROMPT, "foundation.challenge", foundation_record)
        mock_chat.assert_not_called()
        assert response.fallback_used is True
        assert response.text

    def test_fallback_when_disabled(self, llm_enabled, monkeypatch):
        monkeypatch.setattr("execution.response_composer.LLM_ENABLED", False)
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            response = compose(ACTION_GREETING, "foundation.big_idea", {})
        mock_chat.assert_not_called()
        assert response.fallback_used is True

    def test_fallback_suggest_items_has_items(self):
        response = get_fallback_response(ACTION_SUGGEST_ITEMS, "plan.phases", {})
        assert len(response.structured_items) == 4
        assert "1. Investigate the Context" in response.text

    def test_fallback_refine_item(self):
        response = get_fallback_response(
            ACTION_REFINE_ITEM, "plan.phases", {},
            {"item": {"name": "Prototype"}, "instruction": "rename to Build"},
        )
        assert response.structured_items[0]["name"] == "Build"
        assert response.text == "Updated 'Build'. Anything else to change?"

    def test_unknown_action(self):
        with pytest.raises(ValueError, match="compose action"):
            compose("dance", "foundation.big_idea", {})

    def test_unknown_step(self):
        with pytest.raises(ValueError):
            compose(ACTION_GREETING, "nowhere", {})


class TestLLMPath:
    def test_uses_llm_text(self, llm_enabled):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({"text": "Nice work! What question drives this?"})
            response = compose(ACTION_STEP_PROMPT, "foundation.essential_question", {})
        assert response.fallback_used is False
        assert response.text == "Nice work! What question drives this?"
        kwargs = mock_chat.call_args[1]
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["timeout"] == pytest.approx(8.0)

    def test_request_payload(self, llm_enabled, foundation_record):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({"text": "ok"})
            compose(
                ACTION_STAGE_INTRO, "plan.phases", foundation_record,
                [{"role": "user", "text": "hi", "stage": "plan", "kind": "message", "timestamp": "t"}],
                timeout_ms=500, extra={"recap_text": "Recap"},
            )
        request = json.loads(mock_chat.call_args[1]["messages"][0]["content"])
        assert request["stageStepId"] == "plan.phases"
        assert request["action"] == "stage_intro"
        assert request["timeoutMs"] == 500
        assert request["contextWindow"] == [{"role": "user", "text": "hi", "stage": "plan", "kind": "message"}]
        assert "foundation.big_idea" in request["capturedDataSnapshot"]
        assert request["extra"] == {"recap_text": "Recap"}

    def test_items_from_llm(self, llm_enabled):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({
                "text": "Here are some phases.",
                "structured_items": [{"name": "Explore"}, {"title": "Build", "details": ["Sketch"]}],
                "suggested_next_actions": ["Accept"],
            })
            response = compose(ACTION_SUGGEST_ITEMS, "plan.phases", {})
        assert [i["name"] for i in response.structured_items] == ["Explore", "Build"]
        assert response.suggested_next_actions == ["Accept"]

    def test_refine_keeps_first_item_only(self, llm_enabled):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({"text": "Updated.", "structured_items": ["A", "B"]})
            response = compose(ACTION_REFINE_ITEM, "plan.phases", {}, extra={"item": {"name": "X"}})
        assert [i["name"] for i in response.structured_items] == ["A"]

    def test_bad_chips_replaced_with_defaults(self, llm_enabled):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({"text": "ok", "suggested_next_actions": [1, 2]})
            response = compose(ACTION_CLARIFY, "foundation.big_idea", {})
        assert response.suggested_next_actions == ["Show me examples", "Try again"]


class TestFallbackOnFailure:
    @pytest.mark.parametrize("payload", [
        "not json at all",
        json.dumps(["a", "list"]),
        json.dumps({"text": ""}),
        json.dumps({"text": 42}),
    ])
    def test_unusable_text_falls_back(self, llm_enabled, payload):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm(payload)
            response = compose(ACTION_STEP_PROMPT, "foundation.big_idea", {})
        assert response.fallback_used is True
        assert response.text

    def test_items_missing_for_compound_request(self, llm_enabled):
        with patch("execution.response_composer.llm_client.chat") as mock_chat:
            mock_chat.return_value = _llm({"text": "Here you go", "structured_items": []})
            response = compose(ACTION_SUGGEST_ITEMS, "outputs.milestones", {})
        assert response.fallback_used is True
        assert len(response.structured_items) >= 3

    @pytest.mark.parametrize("error", [
        LLMClientError("rate limit"),
        LLMUnavailableError("gone"),
        RuntimeError("unexpected"),
    ])
    def test_errors_fall_back(self, llm_enabled, error):
        with patch("execution.response_composer.llm_client.chat", side_effect=error):
            response = compose(ACTION_STEP_PROMPT, "foundation.big_idea", {})
        assert response.fallback_used is True

    def test_timeout_falls_back_within_budget(self, llm_enabled, foundation_record):
        def slow_chat(**kwargs):
            time.sleep(1.0)
            return _llm({"text": "too late"})

        snapshot = dict(foundation_record)
        with patch("execution.response_composer.llm_client.chat", side_effect=slow_chat):
            started = time.monotonic()
            response = compose(ACTION_STAGE_INTRO, "plan.phases", foundation_record, timeout_ms=100)
            elapsed = time.monotonic() - started
        assert response.fallback_used is True
        assert response.text
        assert elapsed < 0.9
        assert foundation_record == snapshot


class TestHelpers:
    def test_parse_strips_fences(self):
        assert _parse_llm_response('```json\n{"text": "hi"}\n```') == {"text": "hi"}

    def test_parse_rejects_non_string(self):
        assert _parse_llm_response(None) is None

    def test_build_request_defaults(self):
        request = build_request(ACTION_GREETING, "foundation.big_idea", {}, [], 1000)
        assert request["extra"] == {}
        assert request["capturedDataSnapshot"] == {}

    def test_to_dict(self):
        response = ComposedResponse(text="hi", suggested_next_actions=["a"])
        assert response.to_dict() == {
            "text": "hi", "suggested_next_actions": ["a"], "structured_items": None, "fallback_used": False,
        }
