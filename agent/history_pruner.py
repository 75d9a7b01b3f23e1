"""
History pruning for context compaction.

Reduces a conversation to a token target while keeping the messages the
model needs most, in this order of priority:

  1. every system message
  2. the most recent user message
  3. the most recent assistant message
  4. the most recent tool results (each with the assistant call it answers)
  5. older user/assistant messages that fit an even share of what is left

An optional summarizer condenses the tail of the original conversation into
a synthetic system message placed first.  Kept messages always retain their
original relative order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol, Union

from .messages import Message, Role
from .token_counter import estimate_history
from .turn_limits import get_limit

logger = logging.getLogger("reactor")

SUMMARY_PREFIX = "Earlier conversation summarized: "


class SupportsSummarize(Protocol):
    def summarize(self, recent_messages: list[Message]) -> str: ...


Summarizer = Union[SupportsSummarize, Callable[[list[Message]], str]]


@dataclass
class PruneResult:
    """Outcome of a prune.

    Attributes:
        new_history: Messages to keep, summary message first if one was made.
        removed_count: Original messages dropped.
        summary: Text of the synthetic summary message ("" if none).
        tokens_before: Estimate of the original history.
        tokens_after: Estimate of ``new_history``.
        summary_error: Why the summarizer failed, or None.
    """
    new_history: list[Message]
    removed_count: int
    summary: str
    tokens_before: int
    tokens_after: int
    summary_error: str | None = None


def sanitize_history(history: list[Message]) -> list[Message]:
    """Drop tool messages that do not answer a call from an earlier assistant message."""
    issued: set[str] = set()
    result = []
    for msg in history:
        if msg.role is Role.ASSISTANT and msg.tool_calls:
            issued.update(tc.id for tc in msg.tool_calls)
        elif msg.role is Role.TOOL and msg.tool_call_id not in issued:
            continue
        result.append(msg)
    return result


def _call_summarizer(summarizer: Summarizer, messages: list[Message]) -> str:
    fn = getattr(summarizer, "summarize", summarizer)
    return (fn(messages) or "").strip()


def _fit_summary(synopsis: str, budget: int) -> Message | None:
    """Build the summary message, dropping trailing words until it fits *budget*."""
    words = synopsis.split()
    while words:
        msg = Message.system(SUMMARY_PREFIX + " ".join(words))
        excess = msg.tokens - budget
        if excess <= 0:
            return msg
        words = words[: len(words) - max(1, excess)]
    return None


class _Selection:
    """Running set of kept indices with a hard token ceiling."""

    def __init__(self, history: list[Message], target: int):
        self.history = history
        self.target = target
        self.kept: set[int] = set()
        self.tokens = 0

    def force(self, idx: int) -> None:
        if idx not in self.kept:
            self.kept.add(idx)
            self.tokens += self.history[idx].tokens

    def try_keep(self, *indices: int) -> bool:
        new = [i for i in dict.fromkeys(indices) if i not in self.kept]
        cost = sum(self.history[i].tokens for i in new)
        if self.tokens + cost > self.target:
            return False
        self.kept.update(new)
        self.tokens += cost
        return True

    @property
    def full(self) -> bool:
        return self.tokens >= self.target


def is_summary(msg: Message) -> bool:
    """True for a synthetic summary message made by an earlier prune."""
    return msg.role is Role.SYSTEM and (msg.content or "").startswith(SUMMARY_PREFIX)


def _summarize(
    summarizer: Summarizer, history: list[Message], summary_window: int,
) -> tuple[str, str | None]:
    """Synopsis of the tail of *history*, folding in earlier summaries.

    Returns ``(synopsis, error)``; a failing summarizer gives ``("", reason)``.
    """
    tail_start = max(0, len(history) - summary_window)
    earlier = [m for m in history[:tail_start] if is_summary(m)]
    try:
        return _call_summarizer(summarizer, earlier + history[tail_start:]), None
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        logger.warning("History summarization failed, pruning without summary: %s", error)
        return "", error


def prune(
    history: list[Message],
    target_tokens: int,
    summarizer: Summarizer | None = None,
    *,
    keep_tool_messages: int | None = None,
    summary_window: int | None = None,
) -> PruneResult:
    """Reduce *history* to at most *target_tokens* (system messages excepted).

    A history already within the target is returned unchanged and the
    summarizer is not called.  If the summarizer raises, pruning continues
    without the summary message and the failure is reported in
    ``PruneResult.summary_error``.  A new summary replaces the summaries
    left by earlier prunes; without one they are kept like any other
    system message.
    """
    if keep_tool_messages is None:
        keep_tool_messages = get_limit("pruner.keep_tool_messages")
    if summary_window is None:
        summary_window = get_limit("pruner.summary_window")

    if not history:
        return PruneResult([], 0, "", 0, 0)

    tokens_before = estimate_history(history)
    if tokens_before <= target_tokens:
        return PruneResult(list(history), 0, "", tokens_before, tokens_before)

    synopsis, summary_error = "", None
    if summarizer is not None:
        synopsis, summary_error = _summarize(summarizer, history, summary_window)

    sel = _Selection(history, target_tokens)
    user_idx = [i for i, m in enumerate(history) if m.role is Role.USER]
    assistant_idx = [i for i, m in enumerate(history) if m.role is Role.ASSISTANT]
    tool_idx = [i for i, m in enumerate(history) if m.role is Role.TOOL]

    # 1. System messages are unconditional; stale summaries give way to a new one
    for i, msg in enumerate(history):
        if msg.role is Role.SYSTEM and not (synopsis and is_summary(msg)):
            sel.force(i)

    if sel.full:
        kept = [history[i] for i in sorted(sel.kept)]
        return PruneResult(
            kept, len(history) - len(kept), "", tokens_before, estimate_history(kept), summary_error,
        )

    # 2-3. Latest user and assistant turns
    if user_idx:
        sel.try_keep(user_idx[-1])
    if assistant_idx and not sel.full:
        sel.try_keep(assistant_idx[-1])

    # 4. Recent tool results, each paired with the call that produced it
    call_owner: dict[str, int] = {}
    for i in assistant_idx:
        for tc in history[i].tool_calls or ():
            call_owner[tc.id] = i
    for i in reversed(tool_idx[-keep_tool_messages:] if keep_tool_messages > 0 else []):
        if sel.full:
            break
        owner = call_owner.get(history[i].tool_call_id)
        if owner is not None and owner < i:
            sel.try_keep(owner, i)

    # 5. Older user/assistant turns: even share of the leftover, newest first
    middle = [i for i in user_idx[:-1] + assistant_idx[:-1] if i not in sel.kept]
    leftover = target_tokens - sel.tokens
    if middle and leftover > 0:
        share = leftover // len(middle)
        for i in sorted(middle, reverse=True):
            if history[i].tokens < share:
                sel.try_keep(i)

    kept = sanitize_history([history[i] for i in sorted(sel.kept)])
    removed_count = len(history) - len(kept)
    kept_tokens = estimate_history(kept)

    # 6. Synopsis of the recent conversation, placed first
    summary = ""
    if synopsis:
        summary_msg = _fit_summary(synopsis, target_tokens - kept_tokens)
        if summary_msg is not None:
            kept.insert(0, summary_msg)
            summary = summary_msg.content
        else:
            logger.debug("No room for a history summary within %d tokens", target_tokens)

    tokens_after = estimate_history(kept)
    logger.debug(
        "Pruned history: %d -> %d messages, %d -> %d tokens (target %d)",
        len(history), len(kept), tokens_before, tokens_after, target_tokens,
    )
    return PruneResult(kept, removed_count, summary, tokens_before, tokens_after, summary_error)
