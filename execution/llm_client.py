"""OpenAI transport for composed coaching turns.

The composer sends one JSON request per turn and expects one JSON object
back. This module owns the SDK client, maps SDK failures onto three
error types the composer can fall back on, and never retries on its own:
the caller's time box is the only retry budget.
"""

import json
import logging
from dataclasses import dataclass, field

import openai

from config.settings import LLM_MAX_TOKENS, LLM_MODEL, LLM_TEMPERATURE, OPENAI_API_KEY

logger = logging.getLogger(__name__)

JSON_MODE = {"type": "json_object"}


class LLMUnavailableError(Exception):
    """Raised when no key is configured or the service cannot be reached."""


class LLMClientError(Exception):
    """Raised when the API rejects or fails a request."""


class LLMTimeoutError(LLMClientError):
    """Raised when the SDK gives up waiting for a reply."""


@dataclass
class LLMResponse:
    """One assistant reply."""

    content: str
    model: str
    usage: dict = field(default_factory=dict)
    stop_reason: str = ""

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "length"


def is_available() -> bool:
    return bool(OPENAI_API_KEY)


def _client(timeout: float | None) -> openai.OpenAI:
    kwargs = {"api_key": OPENAI_API_KEY, "max_retries": 0}
    if timeout is not None:
        kwargs["timeout"] = timeout
    return openai.OpenAI(**kwargs)


def chat(
    system_prompt: str,
    messages: list[dict],
    model: str | None = None,
    max_tokens: int | None = None,
    temperature: float | None = None,
    response_format: dict | None = None,
    timeout: float | None = None,
) -> LLMResponse:
    """Send a conversation and return the assistant's reply.

    Args:
        system_prompt: The system instruction, sent as the first message.
        messages: Message dicts with 'role' and 'content' keys.
        model: Model name; defaults to LLM_MODEL.
        max_tokens: Reply cap; defaults to LLM_MAX_TOKENS.
        temperature: Sampling temperature; defaults to LLM_TEMPERATURE.
        response_format: Optional response_format, e.g. JSON_MODE.
        timeout: Seconds the SDK waits before giving up.

    Returns:
        LLMResponse. ``content`` is '' when the model returned nothing.

    Raises:
        LLMUnavailableError: No key configured, or the service is unreachable.
        LLMTimeoutError: The request timed out.
        LLMClientError: Any other API failure.
    """
    if not is_available():
        raise LLMUnavailableError("OPENAI_API_KEY is not configured")

    create_kwargs = {
        "model": model or LLM_MODEL,
        "max_tokens": max_tokens or LLM_MAX_TOKENS,
        "temperature": temperature if temperature is not None else LLM_TEMPERATURE,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
    }
    if response_format is not None:
        create_kwargs["response_format"] = response_format

    try:
        response = _client(timeout).chat.completions.create(**create_kwargs)
    except openai.APITimeoutError as e:
        raise LLMTimeoutError(f"LLM request timed out after {timeout}s") from e
    except openai.APIConnectionError as e:
        raise LLMUnavailableError(f"LLM service unreachable: {e}") from e
    except openai.APIError as e:
        raise LLMClientError(f"OpenAI API error: {e}") from e

    choice = response.choices[0]
    usage = response.usage
    result = LLMResponse(
        content=choice.message.content or "",
        model=response.model,
        usage={
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
        } if usage is not None else {},
        stop_reason=choice.finish_reason or "",
    )
    if result.truncated:
        logger.warning("LLM reply hit the token cap (%s tokens)", create_kwargs["max_tokens"])
    return result


def complete_json(system_prompt: str, request: dict, timeout: float | None = None) -> LLMResponse:
    """Send one JSON request as the user message, in JSON response mode."""
    return chat(
        system_prompt=system_prompt,
        messages=[{"role": "user", "content": json.dumps(request, default=str)}],
        response_format=JSON_MODE,
        timeout=timeout,
    )
