"""
Loop guard for agent tool-call loops.

Detects doom loops — the model issuing the same tool call over and over
without making progress — by fingerprinting each (tool, args) pair and
counting repeats inside a bounded sliding window:

    count <  T        NONE
    count == T        SUSPICIOUS
    T < count < 2T    LIKELY_LOOP      -> ask the user
    count >= 2T       CONFIRMED_LOOP   -> ask the user

Prompts are rate-limited by a cooldown so a burst of identical calls in one
turn produces a single question.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .turn_limits import get_limit


class LoopStatus(str, Enum):
    NONE = "none"
    SUSPICIOUS = "suspicious"
    LIKELY_LOOP = "likely_loop"
    CONFIRMED_LOOP = "confirmed_loop"


_PROMPT_STATUSES = frozenset({LoopStatus.LIKELY_LOOP, LoopStatus.CONFIRMED_LOOP})


@dataclass(frozen=True)
class LoopRecord:
    fingerprint: str
    timestamp_ms: int
    step: int


@dataclass(frozen=True)
class LoopCheck:
    """Result of checking a single tool invocation.

    Attributes:
        status: Repetition classification.
        occurrence_count: Matching calls in the window, including this one.
        fingerprint: Key of the (name, args) pair.
        should_prompt: True if the caller should ask the user now.
        message: Human-readable explanation, or None for NONE.
    """
    status: LoopStatus
    occurrence_count: int
    fingerprint: str
    should_prompt: bool
    message: str | None


# Keys stripped from tool args before fingerprinting.
# These carry metadata, not semantic intent.
_STRIP_KEYS = frozenset({"commentary", "_sync"})


def fingerprint(name: str, args: dict | None) -> str:
    """Stable hash of a tool name and its canonicalized arguments.

    Argument order does not matter; metadata keys (commentary, _sync)
    are ignored so that semantically identical calls match.
    """
    cleaned = {k: v for k, v in (args or {}).items() if k not in _STRIP_KEYS}
    try:
        args_str = json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        args_str = str(sorted(cleaned.items()))
    return hashlib.sha256(f"{name}\x00{args_str}".encode("utf-8")).hexdigest()


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class LoopGuard:
    """Per-session doom-loop detector.

    Usage:
        guard = LoopGuard()

        for tc in tool_calls:
            check = guard.check_for_loop(tc.name, tc.arguments, step=step)
            if check.should_prompt:
                # ask the user, then
                guard.mark_prompted()

    Every checked call is recorded, whatever its classification, so
    detection carries across turns.
    """

    def __init__(
        self,
        window_size: int | None = None,
        threshold: int | None = None,
        cooldown_ms: int | None = None,
        clock: Callable[[], int] = _monotonic_ms,
    ):
        self.window_size = window_size if window_size is not None else get_limit("loop_guard.window_size")
        self.threshold = threshold if threshold is not None else get_limit("loop_guard.threshold")
        self.cooldown_ms = cooldown_ms if cooldown_ms is not None else get_limit("loop_guard.cooldown_ms")
        if self.window_size < 1 or self.threshold < 1:
            raise ValueError("window_size and threshold must be >= 1")
        self._clock = clock
        self._window: deque[LoopRecord] = deque(maxlen=self.window_size)
        self._last_prompt_ms: int | None = None

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def check_for_loop(self, name: str, args: dict | None, step: int = 0) -> LoopCheck:
        """Record a tool call and classify how often it has repeated."""
        now = self._clock()
        self._expire(now)
        key = fingerprint(name, args)
        self._window.append(LoopRecord(key, now, step))
        count = sum(1 for rec in self._window if rec.fingerprint == key)
        status = self.classify(count)
        return LoopCheck(
            status=status,
            occurrence_count=count,
            fingerprint=key,
            should_prompt=status in _PROMPT_STATUSES and not self.in_cooldown(now),
            message=self._message_for(name, status, count),
        )

    def classify(self, count: int) -> LoopStatus:
        t = self.threshold
        if count < t:
            return LoopStatus.NONE
        if count == t:
            return LoopStatus.SUSPICIOUS
        if count < 2 * t:
            return LoopStatus.LIKELY_LOOP
        return LoopStatus.CONFIRMED_LOOP

    def _expire(self, now: int) -> None:
        """Drop records older than twice the cooldown."""
        horizon = now - 2 * self.cooldown_ms
        while self._window and self._window[0].timestamp_ms < horizon:
            self._window.popleft()

    # ------------------------------------------------------------------
    # Prompt cooldown
    # ------------------------------------------------------------------

    def in_cooldown(self, now: int | None = None) -> bool:
        if self._last_prompt_ms is None:
            return False
        if now is None:
            now = self._clock()
        return now - self._last_prompt_ms < self.cooldown_ms

    def mark_prompted(self) -> None:
        """Start the prompt cooldown (call after actually asking the user)."""
        self._last_prompt_ms = self._clock()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _message_for(self, name: str, status: LoopStatus, count: int) -> str | None:
        if status is LoopStatus.NONE:
            return None
        if status is LoopStatus.SUSPICIOUS:
            return (
                f"'{name}' has been called {count} times with identical arguments. "
                f"Repeated identical calls rarely produce new information."
            )
        if status is LoopStatus.LIKELY_LOOP:
            return (
                f"Possible loop: '{name}' called {count} times with identical arguments "
                f"in the last {self.window_size} tool calls. Allow it to run again?"
            )
        return (
            f"Loop detected: '{name}' called {count} times with identical arguments "
            f"(limit {2 * self.threshold}). The model is not making progress. "
            f"Allow it to run again?"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def records(self) -> tuple[LoopRecord, ...]:
        """Current window contents, oldest first (for testing/debugging)."""
        return tuple(self._window)

    def reset(self) -> None:
        self._window.clear()
        self._last_prompt_ms = None
