"""Error taxonomy for the agent core.

Only failures that cross a component boundary are exceptions.  Tool
failures, permission denials, user stops and the step ceiling are normal
outcomes of a turn and are modelled as results (``ToolCallResult``,
``PermissionDecision``, ``StopSignal``, ``Stopped``) instead.
"""

from __future__ import annotations


class ReactorError(Exception):
    """Base class; ``code`` is a stable machine-readable identifier."""

    code = "REACTOR_ERROR"

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause

    @classmethod
    def wrap(cls, err: Exception) -> "ReactorError":
        if isinstance(err, cls):
            return err
        return cls(str(err) or type(err).__name__, err)


class ModelTransportError(ReactorError):
    """The model collaborator failed (network, non-2xx, malformed response)."""

    code = "MODEL_TRANSPORT"


class ToolExecutionError(ReactorError):
    """A tool raised while executing."""

    code = "TOOL_EXECUTION"

    def __init__(self, tool_name: str, message: str, cause: Exception | None = None) -> None:
        super().__init__(message, cause)
        self.tool_name = tool_name


class ToolTimeoutError(ToolExecutionError):
    code = "TOOL_TIMEOUT"


class BatchTooLargeError(ReactorError):
    """A batch exceeded the dispatcher cap; nothing was executed."""

    code = "BATCH_TOO_LARGE"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"batch of {size} tool calls exceeds the limit of {limit}")
        self.size = size
        self.limit = limit


class BatchCancelledError(ReactorError):
    """The session was cancelled while a batch was in flight."""

    code = "BATCH_CANCELLED"


class SummarizationError(ReactorError):
    """The summarizer collaborator failed during compaction."""

    code = "SUMMARIZATION"
