"""LLM-backed summarizer used by the history pruner during compaction."""

from __future__ import annotations

import logging

from .errors import ModelTransportError, SummarizationError
from .llm.base import ModelClient
from .messages import Message, Role

logger = logging.getLogger("reactor")

# Per-message cap on content included in the summary prompt
MAX_CONTENT_CHARS = 500
MAX_SUMMARY_TOKENS = 300

_INSTRUCTION = (
    "Summarize the following conversation history into a concise paragraph "
    "(2-3 sentences). Keep file names, decisions and open problems.\n\n"
)


def build_summary_prompt(messages: list[Message]) -> str:
    parts = [_INSTRUCTION]
    for msg in messages:
        parts.append(f"[{msg.role.value.upper()}]")
        if msg.role is Role.ASSISTANT and msg.tool_calls and not msg.content:
            parts.append("Called: " + ", ".join(tc.name for tc in msg.tool_calls))
        else:
            parts.append((msg.content or "")[:MAX_CONTENT_CHARS])
        parts.append("")
    return "\n".join(parts)


class LLMSummarizer:
    """Summarizes recent messages with a single blocking model call.

    Raises ``SummarizationError`` on transport failure or an empty answer;
    the pruner treats that as "no summary".
    """

    def __init__(self, client: ModelClient, model: str | None = None):
        self.client = client
        self.model = model

    def summarize(self, recent_messages: list[Message]) -> str:
        if not recent_messages:
            return ""
        prompt = build_summary_prompt(recent_messages)
        try:
            response = self.client.generate(
                prompt, model=self.model, max_output_tokens=MAX_SUMMARY_TOKENS,
            )
        except ModelTransportError as e:
            raise SummarizationError(f"Summary call failed: {e}", e) from e
        text = (response.text or "").strip()
        if not text:
            raise SummarizationError("Summary call returned no text")
        logger.debug("Generated %d-char history summary", len(text))
        return text

    __call__ = summarize
