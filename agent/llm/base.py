"""Provider-agnostic types and abstract base class for model clients.

All agent code should depend on these types, never on provider-specific SDKs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..messages import ToolCallRequest

if TYPE_CHECKING:
    from ..messages import Message


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A single function/tool invocation extracted from the model response.

    Attributes:
        name: Tool/function name.
        args: Parsed arguments dict.
        id: Provider-assigned call ID (e.g. ``call_xxxxx``).  None if the
            provider didn't send one; an ID is generated on conversion.
    """
    name: str
    args: dict
    id: str | None = None

    def to_request(self) -> ToolCallRequest:
        if self.id:
            return ToolCallRequest(self.name, self.args, id=self.id)
        return ToolCallRequest(self.name, self.args)


@dataclass
class UsageMetadata:
    """Normalized token counts."""
    input_tokens: int = 0
    output_tokens: int = 0
    thinking_tokens: int = 0
    cached_tokens: int = 0


@dataclass
class LLMResponse:
    """Provider-agnostic response from a model call.

    A response carries either text or tool calls.  When both are present the
    tool calls win and the text is treated as commentary.

    Attributes:
        text: Concatenated text output (excludes thinking text).
        tool_calls: Extracted function/tool calls.
        usage: Token usage for this call.
        thoughts: List of thinking/reasoning text blocks (for verbose logging).
        raw: The original provider-specific response object.
    """
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    thoughts: list[str] = field(default_factory=list)
    raw: Any = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def tool_requests(self) -> list[ToolCallRequest]:
        """Convert the tool calls to requests with turn-unique ids.

        A repeated provider id is replaced by a generated one so that each
        tool message answers exactly one call.
        """
        requests = []
        seen: set[str] = set()
        for tc in self.tool_calls:
            req = tc.to_request()
            if req.id in seen:
                req = ToolCallRequest(req.name, req.arguments)
            seen.add(req.id)
            requests.append(req)
        return requests


@dataclass
class FunctionSchema:
    """Wraps a tool/function schema dict for type clarity.

    The ``parameters`` dict is already JSON-schema-shaped and provider-agnostic.
    """
    name: str
    description: str
    parameters: dict


# ---------------------------------------------------------------------------
# ModelClient ABC
# ---------------------------------------------------------------------------

class ModelClient(ABC):
    """Abstract interface every model provider client must implement.

    Implementations are synchronous and raise ``ModelTransportError`` for
    any network, HTTP or parse failure.  Retry policy, if any, lives here
    and not in the control loop.
    """

    model: str = ""

    @abstractmethod
    def send(
        self,
        system_prompt: str | None,
        history: list["Message"],
        tools: list[FunctionSchema] | None = None,
    ) -> LLMResponse:
        """Run one model turn over the full conversation.

        Args:
            system_prompt: System instruction for this call.
            history: Conversation so far, oldest first.
            tools: Tool schemas the model may call.
        """

    @abstractmethod
    def generate(
        self,
        contents: str,
        *,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        """One-shot generation (no chat history).

        Used for history summarization and other single-turn calls.
        """

    def is_quota_error(self, exc: Exception) -> bool:
        """Return True if ``exc`` represents a quota/rate-limit error (429)."""
        return False
