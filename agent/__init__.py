"""Agent execution core: control loop, context budget, loop guard, permissions, dispatch.

Lazy imports so that importing a leaf module (e.g. agent.token_counter)
does not pull in the model client and its SDK.
"""


def __getattr__(name: str):
    if name in ("AgentLoop", "AgentSession", "Done", "Stopped", "StopReason", "create_agent"):
        from . import core
        return getattr(core, name)
    if name in ("Message", "Role", "ToolCallRequest", "ToolCallResult"):
        from . import messages
        return getattr(messages, name)
    if name == "ToolRegistry":
        from .tools import ToolRegistry
        return ToolRegistry
    raise AttributeError(f"module 'agent' has no attribute {name!r}")
