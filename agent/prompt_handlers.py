"""Interactive permission prompt for the terminal.

Implements the prompt-callback contract of ``PermissionGate``:
``prompt(message, tool_name, arguments) -> PermissionDecision | StopSignal``.
"""

from __future__ import annotations

from typing import Callable

from .permissions import PermissionDecision, StopSignal
from .turn_limits import get_limit

_MAX_ARGS_SHOWN = 5

_OPTIONS = """\
Options:
  [a] allow        - allow this call
  [A] always       - allow this tool for a while
  [d] deny         - deny this call
  [D] deny always  - deny this tool for a while
  [c] continue     - allow and keep going
  [s] stop         - stop the agent"""


def format_args(args: dict | None) -> str:
    if not args:
        return "(none)"
    shown = [f"{k}: {v}" for k, v in args.items() if v is not None][:_MAX_ARGS_SHOWN]
    suffix = " ..." if len(args) > _MAX_ARGS_SHOWN else ""
    return ", ".join(shown) + suffix


class ConsolePrompt:
    """Blocking stdin prompt.  Choices are case-sensitive (``a`` vs ``A``).

    Args:
        input_fn: Reads one answer (defaults to ``input``).
        output_fn: Prints the prompt text (defaults to ``print``).
        remember_ms: TTL for the "always" choices.
        max_attempts: Invalid answers tolerated before denying the call.
    """

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
        remember_ms: int | None = None,
        max_attempts: int = 3,
    ):
        self._input = input_fn
        self._output = output_fn
        self.remember_ms = remember_ms if remember_ms is not None else get_limit("permissions.remember_ms")
        self.max_attempts = max_attempts

    def __call__(self, message: str, tool_name: str, arguments: dict):
        self._output(
            f"\nPERMISSION REQUIRED\n\n{message}\n\n"
            f"Tool: {tool_name}\nArguments: {format_args(arguments)}\n\n{_OPTIONS}"
        )
        for _ in range(self.max_attempts):
            try:
                choice = self._input("Your choice: ")
            except EOFError:
                return StopSignal("Input closed")
            verdict = self.parse_choice(choice)
            if verdict is not None:
                return verdict
            self._output("Invalid choice, please answer a, A, d, D, c or s.")
        return PermissionDecision.deny(reason="no valid answer given")

    def parse_choice(self, choice: str | None):
        """Map one answer to a decision; None for unrecognised input."""
        choice = (choice or "").strip()
        if choice in ("a", "allow", "c", "continue"):
            return PermissionDecision.allow(reason="allowed by user")
        if choice in ("A", "always"):
            return PermissionDecision.allow(self.remember_ms, reason="always allowed by user")
        if choice in ("d", "deny"):
            return PermissionDecision.deny(reason="denied by user")
        if choice in ("D", "deny always"):
            return PermissionDecision.deny(self.remember_ms, reason="denied by user")
        if choice in ("s", "stop"):
            return StopSignal("User stopped execution")
        return None
