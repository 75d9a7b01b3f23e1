"""agent/token_counter.py — Centralized token estimation.

A deterministic heuristic, not a provider tokenizer.  Text is split on
whitespace and every chunk is weighed by its shape:

    all CJK ideographs      0.5 per character
    all ASCII letters       0.75  (English word)
    only brackets/quotes    0.25  (isolated punctuation)
    anything else           0.75  (code token)

The sum is rounded up.  Budget decisions throughout the agent treat these
numbers as the system of record.

Public API:
    estimate(text) -> int
    estimate_tool_call(name, arguments) -> int
    estimate_message(msg) -> int
    estimate_history(history) -> int
    estimate_total_context(history, system_prompt) -> int
"""

from __future__ import annotations

import json
import math
import re
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .messages import Message

TOKEN_WEIGHTS: dict[str, float] = {
    "english_word": 0.75,
    "cjk_char": 0.5,
    "code_token": 0.75,
    "special_char": 0.25,
}

# Fixed allowance for the provider's response formatting.
RESPONSE_OVERHEAD = 50

_CJK_RE = re.compile(r"^[\u4e00-\u9fa5]+$")
_WORD_RE = re.compile(r"^[a-zA-Z]+$")
_SPECIAL_RE = re.compile(r"""^[{}\[\]().;,"']+$""")


def estimate(text: str | None) -> int:
    """Estimate the token count of *text*.  ``estimate("") == 0``."""
    if not text:
        return 0
    count = 0.0
    for chunk in text.split():
        if _CJK_RE.match(chunk):
            count += len(chunk) * TOKEN_WEIGHTS["cjk_char"]
        elif _WORD_RE.match(chunk):
            count += TOKEN_WEIGHTS["english_word"]
        elif _SPECIAL_RE.match(chunk):
            count += TOKEN_WEIGHTS["special_char"]
        else:
            count += TOKEN_WEIGHTS["code_token"]
    return math.ceil(count)


def estimate_tool_call(name: str, arguments: str | dict | None) -> int:
    """Estimate a requested tool call from its name and serialized arguments."""
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments or {}, sort_keys=True, default=str)
    return math.ceil((len(name) + len(arguments)) * 0.4)


def estimate_message(msg: "Message") -> int:
    """Estimate one message: its content plus any tool calls it requests."""
    total = estimate(msg.content)
    for tc in msg.tool_calls or ():
        total += estimate_tool_call(tc.name, tc.arguments)
    return total


def estimate_history(history: Iterable["Message"]) -> int:
    """Sum of message estimates (uses each message's cached value)."""
    return sum(msg.tokens for msg in history)


def estimate_total_context(history: Iterable["Message"], system_prompt: str | None) -> int:
    """History + system prompt + fixed response-formatting overhead."""
    return estimate_history(history) + estimate(system_prompt) + RESPONSE_OVERHEAD
