"""OpenAI adapter — wraps the ``openai`` SDK for OpenAI and compatible APIs.

Covers: OpenAI, DeepSeek, Qwen (Alibaba), Kimi (Moonshot), GLM (Zhipu),
Mistral, Groq, Together AI, Ollama, vLLM, and any other provider exposing an
OpenAI-compatible ``/chat/completions`` endpoint.

This is the **only** module that imports the ``openai`` package.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import openai

from ..errors import ModelTransportError
from ..messages import Message, Role
from .base import (
    FunctionSchema,
    LLMResponse,
    ModelClient,
    ToolCall,
    UsageMetadata,
)

logger = logging.getLogger("reactor")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_tools(schemas: list[FunctionSchema] | None) -> list[dict] | None:
    """Convert FunctionSchema list to OpenAI tool format."""
    if not schemas:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": s.name,
                "description": s.description,
                "parameters": s.parameters,
            },
        }
        for s in schemas
    ]


def build_messages(system_prompt: str | None, history: list[Message]) -> list[dict]:
    """Convert a conversation into Chat Completions message dicts.

    Tool calls that never got an answer (e.g. after a cancelled batch) are
    dropped from their assistant message: the API rejects unanswered calls.
    """
    answered = {m.tool_call_id for m in history if m.role is Role.TOOL}
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for msg in history:
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            calls = [tc for tc in msg.tool_calls if tc.id in answered]
            if not calls and not msg.content:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": json.dumps(tc.arguments, default=str),
                        },
                    }
                    for tc in calls
                ]
            messages.append(entry)
        elif msg.role is Role.TOOL:
            messages.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.content or "",
            })
        else:
            messages.append({"role": msg.role.value, "content": msg.content or ""})
    return messages


def _parse_tool_calls(raw_tool_calls) -> list[ToolCall]:
    """Parse OpenAI tool calls into our ToolCall dataclass."""
    if not raw_tool_calls:
        return []
    result = []
    for tc in raw_tool_calls:
        try:
            args = json.loads(tc.function.arguments) if tc.function.arguments else {}
        except (json.JSONDecodeError, TypeError) as e:
            raise ModelTransportError(
                f"Malformed arguments for tool call {tc.function.name!r}: {e}", e,
            ) from e
        if not isinstance(args, dict):
            raise ModelTransportError(
                f"Tool call {tc.function.name!r} arguments are not a JSON object"
            )
        result.append(
            ToolCall(
                name=tc.function.name,
                args=args,
                id=tc.id,
            )
        )
    return result


def _parse_response(raw) -> LLMResponse:
    """Parse a raw OpenAI ChatCompletion into a provider-agnostic LLMResponse."""
    if not raw.choices:
        raise ModelTransportError("Model returned no choices")

    choice = raw.choices[0]
    message = choice.message

    text = message.content or ""
    tool_calls = _parse_tool_calls(message.tool_calls)

    # Reasoning models expose their thinking via reasoning_content
    thoughts: list[str] = []
    reasoning = getattr(message, "reasoning_content", None)
    if reasoning:
        thoughts.append(reasoning)

    # Token usage
    usage = UsageMetadata()
    if raw.usage:
        cached = getattr(raw.usage, "prompt_tokens_details", None)
        cached_tokens = getattr(cached, "cached_tokens", 0) if cached else 0
        usage = UsageMetadata(
            input_tokens=raw.usage.prompt_tokens or 0,
            output_tokens=raw.usage.completion_tokens or 0,
            thinking_tokens=getattr(raw.usage, "completion_tokens_details", None)
            and getattr(raw.usage.completion_tokens_details, "reasoning_tokens", 0)
            or 0,
            cached_tokens=cached_tokens or 0,
        )

    return LLMResponse(
        text=text,
        tool_calls=tool_calls,
        usage=usage,
        thoughts=thoughts,
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OpenAIAdapter(ModelClient):
    """Model client that wraps the ``openai`` SDK's Chat Completions API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        timeout_ms: int = 300_000,
        temperature: float | None = None,
        client: Any = None,
    ):
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        if client is not None:
            self._client = client
        else:
            kwargs: dict[str, Any] = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            kwargs["timeout"] = timeout_ms / 1000.0  # openai SDK uses seconds
            # Retries are left to the caller; the agent loop fails fast
            kwargs["max_retries"] = 0
            self._client = openai.OpenAI(**kwargs)

    # -- ModelClient interface -------------------------------------------------

    def send(
        self,
        system_prompt: str | None,
        history: list[Message],
        tools: list[FunctionSchema] | None = None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(system_prompt, history),
        }
        openai_tools = _build_tools(tools)
        if openai_tools:
            kwargs["tools"] = openai_tools
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return self._create(kwargs)

    def generate(
        self,
        contents: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": str(contents)})

        kwargs: dict[str, Any] = {"model": model or self.model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_output_tokens is not None:
            kwargs["max_tokens"] = max_output_tokens
        return self._create(kwargs)

    def _create(self, kwargs: dict) -> LLMResponse:
        logger.debug("Chat completion: model=%s, %d message(s)", kwargs["model"], len(kwargs["messages"]))
        try:
            raw = self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise ModelTransportError(f"{type(e).__name__}: {e}", e) from e
        try:
            return _parse_response(raw)
        except ModelTransportError:
            raise
        except (AttributeError, IndexError, TypeError) as e:
            raise ModelTransportError(f"Malformed model response: {e}", e) from e

    def is_quota_error(self, exc: Exception) -> bool:
        """Check if the exception is an OpenAI rate-limit error."""
        cause = getattr(exc, "cause", None) or exc
        return isinstance(cause, openai.RateLimitError)

    # -- Convenience properties ------------------------------------------------

    @property
    def client(self):
        """Escape hatch — the underlying ``openai.OpenAI`` client."""
        return self._client
