"""
Tool registry for model function calling.

Each registered tool has a JSON-schema ``parameters`` block describing what
the model may pass, plus a handler that does the work.  The registry is the
tool collaborator of the agent loop: ``execute(name, args)`` never raises,
every failure comes back as a ``ToolCallResult`` with ``success=False``.

Concrete tools (file I/O, search, shell, ...) are supplied by the embedding
application.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .errors import ToolExecutionError
from .llm.base import FunctionSchema
from .messages import ToolCallResult

logger = logging.getLogger("reactor")

ToolHandler = Callable[..., Any]


COMMENTARY_PROPERTY = {
    "commentary": {
        "type": "string",
        "description": (
            "Brief active-voice sentence describing what you are doing and why. "
            "One sentence preferred, two max. Shown to the user. "
            "Examples: 'Reading the config loader to find the default model', "
            "'Running the unit tests for the parser'"
        ),
    }
}


def _inject_commentary(parameters: dict) -> dict:
    """Return a copy of *parameters* with a required ``commentary`` string."""
    params = dict(parameters)
    props = dict(params.get("properties", {}))
    props.update(COMMENTARY_PROPERTY)
    params["properties"] = props
    req = list(params.get("required", []))
    if "commentary" not in req:
        req.append("commentary")
    params["required"] = req
    return params


@dataclass
class Tool:
    name: str
    description: str
    parameters: dict
    handler: ToolHandler


def _to_result(name: str, value: Any, elapsed_ms: int) -> ToolCallResult:
    if isinstance(value, ToolCallResult):
        if not value.duration_ms:
            value.duration_ms = elapsed_ms
        return value
    if value is None:
        output = ""
    elif isinstance(value, str):
        output = value
    else:
        output = json.dumps(value, default=str, ensure_ascii=False)
    return ToolCallResult(name, True, output=output, duration_ms=elapsed_ms)


class ToolRegistry:
    """Name -> Tool table.

    Args:
        commentary: If True, every schema gets a required ``commentary``
            parameter; it is stripped from the arguments before the handler
            runs and logged instead.
    """

    def __init__(self, commentary: bool = False):
        self._tools: dict[str, Tool] = {}
        self.commentary = commentary

    def register(
        self,
        name: str,
        description: str,
        parameters: dict | None = None,
        handler: ToolHandler | None = None,
    ):
        """Register a tool.  Usable directly or as a decorator::

            @registry.register("read_file", "Read a file", {...})
            def read_file(path: str) -> str: ...
        """
        parameters = parameters or {"type": "object", "properties": {}}

        def _add(fn: ToolHandler) -> ToolHandler:
            if name in self._tools:
                raise ValueError(f"Tool already registered: {name!r}")
            self._tools[name] = Tool(name, description, parameters, fn)
            return fn

        if handler is not None:
            _add(handler)
            return handler
        return _add

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def schemas(self, names: list[str] | None = None) -> list[FunctionSchema]:
        """Return tool schemas as ``FunctionSchema`` objects ready for model clients.

        Args:
            names: Optional list of tool names to include.
                If None, returns all tools.
        """
        wanted = None if names is None else set(names)
        return [
            FunctionSchema(
                name=t.name,
                description=t.description,
                parameters=_inject_commentary(t.parameters) if self.commentary else t.parameters,
            )
            for t in self._tools.values()
            if wanted is None or t.name in wanted
        ]

    def execute(self, name: str, args: dict | None = None) -> ToolCallResult:
        """Run a tool; failures (including unknown names) become failed results."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolCallResult(name, False, error=f"Unknown tool: {name}")

        args = dict(args or {})
        commentary = args.pop("commentary", None)
        if commentary:
            logger.debug("[%s] %s", name, commentary, extra={"log_tag": "tool"})

        start = time.monotonic()
        try:
            value = tool.handler(**args)
        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            err = ToolExecutionError(name, f"{type(e).__name__}: {e}", e)
            logger.debug("Tool %s failed: %s", name, err)
            return ToolCallResult(name, False, error=str(err), duration_ms=elapsed_ms)
        return _to_result(name, value, int((time.monotonic() - start) * 1000))
