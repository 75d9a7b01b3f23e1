"""Context budget checks and history compaction.

Before every model call the control loop estimates the full context
(history + system prompt + overhead) and asks for a ``BudgetLevel``:

    NONE      below 75% of the budget  -> proceed
    WARNING   at or above 75%          -> prune to 80% of the budget
    CRITICAL  at or above 90%          -> prune to 60% of the budget

``Compactor`` ties the check to the pruner, the session store and the
event bus.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .event_bus import COMPACTION, SUMMARIZATION_ERROR, EventBus
from .history_pruner import PruneResult, Summarizer, prune
from .messages import Message
from .token_counter import estimate_total_context

if TYPE_CHECKING:
    from .session import SessionManager


class BudgetLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


WARNING_RATIO = 0.75
CRITICAL_RATIO = 0.90

# Fraction of the budget to prune down to, per level.
TARGET_RATIOS: dict[BudgetLevel, float] = {
    BudgetLevel.WARNING: 0.80,
    BudgetLevel.CRITICAL: 0.60,
}


class ContextBudgetManager:
    """Classifies context usage against a token budget."""

    def __init__(self, warning_ratio: float = WARNING_RATIO, critical_ratio: float = CRITICAL_RATIO):
        if not 0 < warning_ratio <= critical_ratio:
            raise ValueError("expected 0 < warning_ratio <= critical_ratio")
        self.warning_ratio = warning_ratio
        self.critical_ratio = critical_ratio

    def check_level(self, current_tokens: int, max_tokens: int) -> BudgetLevel:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        ratio = current_tokens / max_tokens
        if ratio >= self.critical_ratio:
            return BudgetLevel.CRITICAL
        if ratio >= self.warning_ratio:
            return BudgetLevel.WARNING
        return BudgetLevel.NONE

    def should_compact(self, current_tokens: int, max_tokens: int) -> bool:
        return self.check_level(current_tokens, max_tokens) is not BudgetLevel.NONE

    @staticmethod
    def target_for(level: BudgetLevel, max_tokens: int) -> int:
        """Token target for the pruner at *level* (``max_tokens`` for NONE)."""
        ratio = TARGET_RATIOS.get(level)
        if ratio is None:
            return max_tokens
        return int(max_tokens * ratio)

    def warning_message(self, current_tokens: int, max_tokens: int) -> str:
        level = self.check_level(current_tokens, max_tokens)
        pct = current_tokens * 100 // max_tokens
        if level is BudgetLevel.CRITICAL:
            return f"Context at {pct}% - compacting now"
        if level is BudgetLevel.WARNING:
            return f"Context at {pct}% - compacting"
        return ""


_default_manager = ContextBudgetManager()


def check_level(current_tokens: int, max_tokens: int) -> BudgetLevel:
    """Module-level shortcut using the default 75%/90% thresholds."""
    return _default_manager.check_level(current_tokens, max_tokens)


def should_compact(current_tokens: int, max_tokens: int) -> bool:
    return _default_manager.should_compact(current_tokens, max_tokens)


@dataclass
class CompactionResult:
    """What a compaction pass did.  ``new_history`` is None when skipped."""
    performed: bool
    level: BudgetLevel
    tokens_before: int
    tokens_after: int
    messages_removed: int = 0
    reason: str = ""
    duration_ms: int = 0
    summary: str = ""
    new_history: Optional[list[Message]] = field(default=None, repr=False)

    @classmethod
    def skipped(cls, level: BudgetLevel, tokens: int, reason: str) -> "CompactionResult":
        return cls(False, level, tokens, tokens, reason=reason)


class Compactor:
    """Runs the budget check and, when triggered, prunes the history.

    Args:
        budget: Level classifier.
        summarizer: Optional summarizer collaborator for the pruner.
        session_store: Receives the pruned history via ``compact_session``.
        event_bus: Session event bus for ``compaction`` events.
    """

    def __init__(
        self,
        budget: ContextBudgetManager | None = None,
        summarizer: Summarizer | None = None,
        session_store: "SessionManager | None" = None,
        event_bus: EventBus | None = None,
    ):
        self.budget = budget or ContextBudgetManager()
        self.summarizer = summarizer
        self.session_store = session_store
        self.event_bus = event_bus

    def maybe_compact(
        self,
        session_id: str,
        history: list[Message],
        system_prompt: str | None,
        max_tokens: int,
    ) -> CompactionResult:
        current = estimate_total_context(history, system_prompt)
        level = self.budget.check_level(current, max_tokens)
        if level is BudgetLevel.NONE:
            return CompactionResult.skipped(
                level, current, f"Context within limits ({current}/{max_tokens} tokens)",
            )
        if self.event_bus:
            self.event_bus.emit(
                COMPACTION, level="info",
                msg=self.budget.warning_message(current, max_tokens),
                data={"phase": "start", "level": level.value, "tokens": current, "max_tokens": max_tokens},
            )
        return self._compact(session_id, history, system_prompt, max_tokens, level, current)

    def _compact(
        self,
        session_id: str,
        history: list[Message],
        system_prompt: str | None,
        max_tokens: int,
        level: BudgetLevel,
        tokens_before: int,
    ) -> CompactionResult:
        start = time.monotonic()
        target = self.budget.target_for(level, max_tokens)
        result: PruneResult = prune(history, target, self.summarizer)

        if result.summary_error and self.event_bus:
            self.event_bus.emit(
                SUMMARIZATION_ERROR, level="warning",
                msg=f"Summarization failed during compaction: {result.summary_error}",
                data={"error": result.summary_error},
            )

        # An unsaved session (empty id) has no directory to write to
        if self.session_store is not None and session_id:
            self.session_store.compact_session(session_id, result.new_history, result.summary)

        tokens_after = estimate_total_context(result.new_history, system_prompt)
        duration_ms = int((time.monotonic() - start) * 1000)
        if self.event_bus:
            self.event_bus.emit(
                COMPACTION, level="info",
                msg=f"Compacted history: {tokens_before}->{tokens_after} tokens, "
                    f"{result.removed_count} message(s) removed",
                data={
                    "phase": "done",
                    "level": level.value,
                    "tokens_before": tokens_before,
                    "tokens_after": tokens_after,
                    "messages_removed": result.removed_count,
                    "duration_ms": duration_ms,
                },
            )
        return CompactionResult(
            performed=True,
            level=level,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            messages_removed=result.removed_count,
            reason="Compaction completed",
            duration_ms=duration_ms,
            summary=result.summary,
            new_history=result.new_history,
        )
