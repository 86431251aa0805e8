"""Compose the next conversational message, with or without the LLM.

The composer asks the LLM for a continuation (and, for compound steps,
a structured item set). Every call is time-boxed. On timeout, error, or
output that fails a minimal sanity check, a deterministic stage-aware
template is returned instead, so a session never stalls.

The composer never mutates session state; callers decide what to keep.
"""

import json
import logging
import re
from concurrent import futures
from dataclasses import dataclass, field

from config.settings import COMPOSE_TIMEOUT_MS, LLM_ENABLED
from execution import llm_client
from execution.data_capture import MAX_ITEMS, normalize_item, normalize_items, record_to_dict
from execution.fallback_content import (
    fallback_items,
    fallback_message,
    fallback_next_actions,
    refine_item_fallback,
)
from execution.stage_table import find_step

logger = logging.getLogger(__name__)

ACTION_GREETING = "greeting"
ACTION_STEP_PROMPT = "step_prompt"
ACTION_STAGE_INTRO = "stage_intro"
ACTION_CLARIFY = "clarify"
ACTION_SUGGEST_ITEMS = "suggest_items"
ACTION_REFINE_ITEM = "refine_item"
ACTION_COMPLETE = "complete"

COMPOSE_ACTIONS = (
    ACTION_GREETING,
    ACTION_STEP_PROMPT,
    ACTION_STAGE_INTRO,
    ACTION_CLARIFY,
    ACTION_SUGGEST_ITEMS,
    ACTION_REFINE_ITEM,
    ACTION_COMPLETE,
)
ITEM_ACTIONS = {ACTION_SUGGEST_ITEMS, ACTION_REFINE_ITEM}

MAX_TEXT_LENGTH = 2000

_executor = futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="composer")


SYSTEM_PROMPT = """\
You are a warm, concise project-design coach helping an educator build a
project-based learning blueprint step by step (Foundation, Plan, Outputs).

You receive a JSON request describing the current step, the action to
perform, the answers captured so far, and recent conversation context.

Respond with a JSON object ONLY, in this shape:
{
  "text": "The next message to show the educator (2-4 sentences).",
  "structured_items": [{"name": "Item name", "details": ["optional detail"]}],
  "suggested_next_actions": ["Short chip label", "Another chip"]
}

Rules:
- "text" is always required and must be non-empty.
- For action "suggest_items", return 3-5 structured_items for the step.
- For action "refine_item", return exactly one structured item: the
  revised version of request.extra.item following request.extra.instruction.
- For other actions, omit structured_items.
- Never invent answers the educator has not given.
"""


@dataclass
class ComposedResponse:
    """The next message plus optional structured items."""

    text: str
    suggested_next_actions: list[str] = field(default_factory=list)
    structured_items: list[dict] | None = None
    fallback_used: bool = False

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "suggested_next_actions": list(self.suggested_next_actions),
            "structured_items": self.structured_items,
            "fallback_used": self.fallback_used,
        }


def build_request(
    action: str,
    stage_step_id: str,
    captured: dict,
    context_window: list[dict],
    timeout_ms: int,
    extra: dict | None = None,
) -> dict:
    """Build the generative-service request payload."""
    return {
        "stageStepId": stage_step_id,
        "action": action,
        "capturedDataSnapshot": record_to_dict(captured),
        "contextWindow": [
            {"role": t["role"], "text": t["text"], "stage": t.get("stage"), "kind": t.get("kind")}
            for t in context_window
        ],
        "timeoutMs": timeout_ms,
        "extra": extra or {},
    }


def _parse_llm_response(raw) -> dict | None:
    """Parse the LLM's JSON response, handling common formatting issues.

    Returns:
        Parsed dict, or None if parsing fails.
    """
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    text = re.sub(r"^```(?:json)?\s*\n?", "", text)
    text = re.sub(r"\n?```\s*$", "", text)
    text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def _sanity_check(data: dict | None, action: str, step) -> ComposedResponse | None:
    """Return a ComposedResponse if the parsed output is usable, else None."""
    if data is None:
        return None
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return None

    items = None
    if action in ITEM_ACTIONS:
        raw_items = data.get("structured_items")
        if not isinstance(raw_items, list):
            return None
        items = normalize_items(raw_items)[:MAX_ITEMS]
        if not items:
            return None
        if action == ACTION_REFINE_ITEM:
            items = items[:1]

    chips = data.get("suggested_next_actions")
    if not isinstance(chips, list) or not all(isinstance(c, str) and c.strip() for c in chips):
        chips = fallback_next_actions(action, step)

    return ComposedResponse(
        text=text.strip()[:MAX_TEXT_LENGTH],
        suggested_next_actions=[c.strip() for c in chips][:4],
        structured_items=items,
        fallback_used=False,
    )


def get_fallback_response(
    action: str, stage_step_id: str, captured: dict, extra: dict | None = None
) -> ComposedResponse:
    """Deterministic response for an action. Always well formed."""
    extra = dict(extra or {})
    step = find_step(stage_step_id)[2]
    items = None
    if action == ACTION_SUGGEST_ITEMS:
        items = fallback_items(stage_step_id, captured)
        extra["items"] = items
    elif action == ACTION_REFINE_ITEM:
        item = normalize_item(extra.get("item") or {}) or {"name": "Item", "details": [], "extensions": {}}
        items = [refine_item_fallback(item, extra.get("instruction", ""))]
        extra["item"] = items[0]
    return ComposedResponse(
        text=fallback_message(action, stage_step_id, captured, extra),
        suggested_next_actions=fallback_next_actions(action, step),
        structured_items=items,
        fallback_used=True,
    )


def compose(
    action: str,
    stage_step_id: str,
    captured: dict,
    context_window: list[dict] | None = None,
    timeout_ms: int | None = None,
    extra: dict | None = None,
) -> ComposedResponse:
    """Compose the next message for a step.

    Calls the LLM for a dynamic response. Falls back to a deterministic
    template if the LLM is disabled, unavailable, slower than
    ``timeout_ms``, or returns unusable output.

    Args:
        action: One of COMPOSE_ACTIONS.
        stage_step_id: The step the message is about.
        captured: The captured record ({storage_key: CapturedValue}).
        context_window: Relevant conversation turns.
        timeout_ms: Time budget for the LLM call.
        extra: Action details (issues, recap_text, item, instruction).

    Returns:
        ComposedResponse with non-empty text (and items for item actions).

    Raises:
        ValueError: If the action or step is unknown.
    """
    if action not in COMPOSE_ACTIONS:
        raise ValueError(f"Unknown compose action '{action}'")
    step = find_step(stage_step_id)[2]
    timeout_ms = timeout_ms or COMPOSE_TIMEOUT_MS

    if not LLM_ENABLED or not llm_client.is_available():
        logger.info("LLM unavailable, using fallback for %s (%s)", step.key, action)
        return get_fallback_response(action, step.key, captured, extra)

    request = build_request(action, step.key, captured, context_window or [], timeout_ms, extra)
    timeout_s = timeout_ms / 1000
    future = _executor.submit(llm_client.complete_json, SYSTEM_PROMPT, request, timeout_s)
    try:
        llm_response = future.result(timeout=timeout_s)
    except futures.TimeoutError:
        future.cancel()
        logger.warning("Compose timed out after %sms for %s. Using fallback.", timeout_ms, step.key)
        return get_fallback_response(action, step.key, captured, extra)
    except (llm_client.LLMUnavailableError, llm_client.LLMClientError) as e:
        logger.warning("Compose failed: %s. Using fallback.", e)
        return get_fallback_response(action, step.key, captured, extra)
    except Exception as e:
        logger.error("Unexpected compose error for %s: %s. Using fallback.", step.key, e)
        return get_fallback_response(action, step.key, captured, extra)

    response = _sanity_check(_parse_llm_response(llm_response.content), action, step)
    if response is None:
        logger.warning("Compose returned unusable output for %s (%s). Using fallback.", step.key, action)
        return get_fallback_response(action, step.key, captured, extra)
    return response
