"""Conversation data model shared by every component of the agent core.

A ``Message`` is one turn of conversation.  Assistant messages that request
tools carry ``tool_calls`` (and usually no content); each ``tool`` message
answers exactly one of those calls through ``tool_call_id``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# Values a tool argument may take.  Anything else is rejected up front so
# that fingerprints are stable regardless of where the arguments came from.
ArgValue = Union[str, int, float, bool, None, list, dict]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def canonicalize_arguments(arguments: dict | None) -> dict[str, Any]:
    """Validate tool arguments and return a plain JSON-compatible copy.

    Tuples become lists; keys must be strings.  Raises ``TypeError`` for any
    value outside str/int/float/bool/None/list/dict.
    """
    if arguments is None:
        return {}
    if not isinstance(arguments, dict):
        raise TypeError(f"tool arguments must be a mapping, got {type(arguments).__name__}")
    return {_check_key(k): _canonical_value(v) for k, v in arguments.items()}


def _check_key(key) -> str:
    if not isinstance(key, str):
        raise TypeError(f"tool argument keys must be strings, got {key!r}")
    return key


def _canonical_value(value):
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    if isinstance(value, dict):
        return {_check_key(k): _canonical_value(v) for k, v in value.items()}
    raise TypeError(f"unsupported tool argument value of type {type(value).__name__}")


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model.

    Attributes:
        name: Tool name.
        arguments: Ordered mapping of argument names to values.
        id: Unique within the turn; echoed back as ``tool_call_id``.
    """
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}")

    def __post_init__(self):
        self.arguments = canonicalize_arguments(self.arguments)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCallRequest":
        return cls(name=data["name"], arguments=data.get("arguments") or {}, id=data["id"])


@dataclass
class ToolCallResult:
    """Outcome of one tool call.  Failures are values, never exceptions."""
    tool_name: str
    success: bool
    output: str = ""
    duration_ms: int = 0
    error: str | None = None

    def to_content(self) -> str:
        """Text fed back to the model as the tool message content."""
        if self.success:
            return self.output
        if self.output and self.error and self.error not in self.output:
            return f"Error: {self.error}\n{self.output}"
        return self.output or f"Error: {self.error or 'tool call failed'}"

    def __str__(self) -> str:
        status = "OK" if self.success else "FAILED"
        preview = (self.output or self.error or "no output")[:100]
        return f"[{self.tool_name}] {status} ({self.duration_ms}ms): {preview}"


@dataclass
class Message:
    """One conversation turn.

    ``estimated_tokens`` is a lazily filled cache; see ``tokens``.
    """
    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None
    estimated_tokens: int | None = field(default=None, compare=False)

    def __post_init__(self):
        self.role = Role(self.role)
        if self.tool_calls is not None and self.role is not Role.ASSISTANT:
            raise ValueError("only assistant messages may carry tool_calls")
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")

    # -- Factories ---------------------------------------------------------

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(Role.ASSISTANT, content)

    @classmethod
    def assistant_tool_calls(cls, calls: list[ToolCallRequest]) -> "Message":
        return cls(Role.ASSISTANT, None, tool_calls=list(calls))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "Message":
        return cls(Role.TOOL, content, tool_call_id=tool_call_id)

    # -- Derived -------------------------------------------------------------

    @property
    def tokens(self) -> int:
        if self.estimated_tokens is None:
            from .token_counter import estimate_message
            self.estimated_tokens = estimate_message(self)
        return self.estimated_tokens

    @property
    def requests_tools(self) -> bool:
        return bool(self.tool_calls)

    # -- Serialization (session store) ---------------------------------------

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        calls = data.get("tool_calls")
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            tool_calls=[ToolCallRequest.from_dict(c) for c in calls] if calls else None,
            tool_call_id=data.get("tool_call_id"),
        )


def validate_history(history: list[Message]) -> list[str]:
    """Return a list of invariant violations (empty when the history is sound).

    Every tool message must answer a tool call issued by an earlier
    assistant message, and no call may be answered twice.
    """
    problems: list[str] = []
    open_calls: set[str] = set()
    answered: set[str] = set()
    for i, msg in enumerate(history):
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            open_calls.update(tc.id for tc in msg.tool_calls)
        elif msg.role is Role.TOOL:
            if msg.tool_call_id not in open_calls:
                problems.append(f"message {i}: tool result for unknown call {msg.tool_call_id!r}")
            elif msg.tool_call_id in answered:
                problems.append(f"message {i}: duplicate tool result for {msg.tool_call_id!r}")
            answered.add(msg.tool_call_id)
    return problems
