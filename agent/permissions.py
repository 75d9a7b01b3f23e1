"""
Permission gate — decides whether each requested tool call may run.

Resolution order for ``decide(name, args)``:

  1. An unexpired remembered decision for the tool (set by a sticky
     "always allow" / "always deny" prompt answer).
  2. The loop guard: when it asks for a prompt, the prompt callback is
     shown the loop message and its answer is returned.
  3. The static policy table (read-only tools ALLOW, mutating tools ASK,
     unknown tools ASK).  ``config.json`` key ``"permissions"`` overrides it.

``resolve()`` additionally turns ASK into a prompt, so the control loop only
ever sees ALLOW, DENY or a ``StopSignal``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Union

import config

from .event_bus import LOOP_DETECTED, PERMISSION_PROMPT, EventBus
from .loop_guard import LoopCheck, LoopGuard, LoopStatus
from .turn_limits import get_limit

logger = logging.getLogger("reactor")


class PermissionAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@dataclass(frozen=True)
class PermissionDecision:
    """Gate verdict for one call.

    Attributes:
        action: ALLOW, DENY or ASK.
        remembered: Sticky choice that applies to later calls of the tool.
        remembered_for_ms: Lifetime of a sticky choice (0 = default TTL).
        reason: Why the decision was made (shown in denial messages).
    """
    action: PermissionAction
    remembered: bool = False
    remembered_for_ms: int = 0
    reason: str = ""

    @classmethod
    def allow(cls, remember_ms: int | None = None, reason: str = "") -> "PermissionDecision":
        return cls(PermissionAction.ALLOW, remember_ms is not None, remember_ms or 0, reason)

    @classmethod
    def deny(cls, remember_ms: int | None = None, reason: str = "") -> "PermissionDecision":
        return cls(PermissionAction.DENY, remember_ms is not None, remember_ms or 0, reason)

    @classmethod
    def ask(cls, reason: str = "") -> "PermissionDecision":
        return cls(PermissionAction.ASK, reason=reason)

    @property
    def allowed(self) -> bool:
        return self.action is PermissionAction.ALLOW


@dataclass(frozen=True)
class StopSignal:
    """Returned by a prompt callback when the user chooses to stop the run."""
    reason: str = "User stopped execution"


class PromptCallback(Protocol):
    def __call__(
        self, message: str, tool_name: str, arguments: dict,
    ) -> Union[PermissionDecision, StopSignal]: ...


GateVerdict = Union[PermissionDecision, StopSignal]


# Read-only tools run freely; anything with side effects needs a yes.
DEFAULT_POLICY: dict[str, PermissionAction] = {
    "read_file": PermissionAction.ALLOW,
    "list_files": PermissionAction.ALLOW,
    "glob": PermissionAction.ALLOW,
    "grep": PermissionAction.ALLOW,
    "code_search": PermissionAction.ALLOW,
    "lsp": PermissionAction.ALLOW,
    "web_search": PermissionAction.ALLOW,
    "fetch_url": PermissionAction.ALLOW,
    "skill": PermissionAction.ALLOW,
    "write_file": PermissionAction.ASK,
    "edit_file": PermissionAction.ASK,
    "multi_edit": PermissionAction.ASK,
    "patch": PermissionAction.ASK,
    "bash": PermissionAction.ASK,
    "task": PermissionAction.ASK,
}

UNKNOWN_TOOL_ACTION = PermissionAction.ASK


def load_policy() -> dict[str, PermissionAction]:
    """DEFAULT_POLICY with ``config.get("permissions")`` overrides applied."""
    policy = dict(DEFAULT_POLICY)
    for name, value in (config.get("permissions", {}) or {}).items():
        try:
            policy[name] = PermissionAction(str(value).lower())
        except ValueError:
            logger.warning("Ignoring invalid permission %r for tool %r", value, name)
    return policy


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass
class _Remembered:
    decision: PermissionDecision
    expires_at_ms: int


class PermissionGate:
    """Per-session permission gate.

    Args:
        loop_guard: Repetition detector consulted on every call.
        prompt: Callback asking the user; None means ASK resolves to DENY.
        policy: Tool name -> action table (defaults to ``load_policy()``).
        clock: Millisecond clock, injectable for tests.
        event_bus: Optional bus for ``loop_detected`` / ``permission_prompt``.
    """

    def __init__(
        self,
        loop_guard: LoopGuard | None = None,
        prompt: Optional[PromptCallback] = None,
        policy: dict[str, PermissionAction] | None = None,
        clock: Callable[[], int] = _monotonic_ms,
        event_bus: EventBus | None = None,
    ):
        self.loop_guard = loop_guard or LoopGuard()
        self.prompt = prompt
        self.policy = policy if policy is not None else load_policy()
        self._clock = clock
        self.event_bus = event_bus
        self._remembered: dict[str, _Remembered] = {}
        # Last loop-prompt answer per fingerprint, reused during the cooldown
        self._loop_answers: dict[str, PermissionDecision] = {}

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(self, name: str, args: dict | None = None, step: int = 0) -> GateVerdict:
        """Return ALLOW/DENY/ASK, or a StopSignal if the user stopped the run.

        Every call is recorded by the loop guard, even when a remembered
        decision short-circuits the answer.
        """
        args = args or {}
        check = self.loop_guard.check_for_loop(name, args, step=step)
        self._report_loop(name, check)

        remembered = self.remembered_decision(name)
        if remembered is not None:
            logger.debug("Using remembered %s for %s", remembered.action.value, name)
            return remembered

        if check.should_prompt:
            verdict = self._ask(check.message or "", name, args, loop_prompt=True)
            self.loop_guard.mark_prompted()
            if isinstance(verdict, PermissionDecision):
                self._loop_answers[check.fingerprint] = verdict
            return verdict
        if check.status in (LoopStatus.LIKELY_LOOP, LoopStatus.CONFIRMED_LOOP):
            previous = self._loop_answers.get(check.fingerprint)
            if previous is not None:
                return previous

        return PermissionDecision(self.policy.get(name, UNKNOWN_TOOL_ACTION), reason="policy")

    def resolve(self, name: str, args: dict | None = None, step: int = 0) -> GateVerdict:
        """Like ``decide`` but ASK is settled by prompting (or DENY without a prompt)."""
        args = args or {}
        verdict = self.decide(name, args, step=step)
        if isinstance(verdict, StopSignal) or verdict.action is not PermissionAction.ASK:
            return verdict
        return self._ask(f"Tool '{name}' requires permission to run.", name, args)

    def _ask(self, message: str, name: str, args: dict, loop_prompt: bool = False) -> GateVerdict:
        if self.prompt is None:
            return PermissionDecision.deny(reason="no permission prompt available")
        if self.event_bus:
            self.event_bus.emit(
                PERMISSION_PROMPT, agent="permissions", level="info",
                msg=f"Asking permission for {name}",
                data={"tool": name, "args": args, "loop": loop_prompt},
            )
        verdict = self.prompt(message, name, args)
        if isinstance(verdict, StopSignal):
            return verdict
        if verdict.action is PermissionAction.ASK:
            # The user gave no usable answer; do not run the call
            verdict = PermissionDecision.deny(reason="no decision given")
        if verdict.remembered:
            self.remember(name, verdict)
        return verdict

    # ------------------------------------------------------------------
    # Remembered (sticky) decisions
    # ------------------------------------------------------------------

    def remember(self, name: str, decision: PermissionDecision) -> None:
        ttl = decision.remembered_for_ms or get_limit("permissions.remember_ms")
        self._remembered[name] = _Remembered(decision, self._clock() + ttl)

    def remembered_decision(self, name: str) -> PermissionDecision | None:
        entry = self._remembered.get(name)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at_ms:
            del self._remembered[name]
            return None
        return entry.decision

    def forget(self, name: str | None = None) -> None:
        """Drop the remembered decision for *name*, or all of them."""
        if name is None:
            self._remembered.clear()
        else:
            self._remembered.pop(name, None)

    # ------------------------------------------------------------------

    def _report_loop(self, name: str, check: LoopCheck) -> None:
        if check.status is LoopStatus.NONE:
            return
        logger.warning("%s", check.message)
        if self.event_bus:
            self.event_bus.emit(
                LOOP_DETECTED, agent="loop_guard", level="warning",
                msg=check.message or "",
                data={
                    "tool": name,
                    "status": check.status.value,
                    "count": check.occurrence_count,
                    "prompted": check.should_prompt,
                },
            )
