"""
Core agent logic — the ReAct control loop.

One ``AgentLoop`` drives one session.  Each step it checks the context
budget (compacting the history if needed), asks the model for the next
move, and either finishes with the model's text or runs the requested
tool calls and feeds their results back:

    AWAITING_MODEL ─(text)──────────────► DONE
          │   ▲
          │   └──(tool results appended)── EXECUTING_TOOLS
          └──(tool calls)─────────────────► EXECUTING_TOOLS

    any state ──(max steps | user stop | model error | cancel)──► STOPPED

COMPACTING is entered from AWAITING_MODEL before every model call.  Tool
failures and permission denials are fed back to the model as tool messages;
only the four stop reasons end a run early.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Union

import config

from .context_budget import Compactor, ContextBudgetManager
from .dispatcher import ToolDispatcher
from .errors import BatchCancelledError, ModelTransportError, ReactorError
from .event_bus import (
    AGENT_RESPONSE,
    LLM_CALL,
    LLM_ERROR,
    LLM_RESPONSE,
    PERMISSION_DENIED,
    SESSION_END,
    SESSION_START,
    STATE_CHANGE,
    TOOL_CALL,
    TOOL_ERROR,
    TOOL_RESULT,
    USER_MESSAGE,
    EventBus,
)
from .llm.base import ModelClient
from .loop_guard import LoopGuard
from .messages import Message, ToolCallRequest, ToolCallResult
from .permissions import PermissionGate, PromptCallback, StopSignal
from .tools import ToolRegistry
from .turn_limits import get_limit

if TYPE_CHECKING:
    from .history_pruner import Summarizer
    from .session import SessionManager

logger = logging.getLogger("reactor")


class AgentState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    COMPACTING = "compacting"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    STOPPED = "stopped"


class StopReason(str, enum.Enum):
    MAX_STEPS = "max_steps"
    USER_STOPPED = "user_stopped"
    MODEL_ERROR = "model_error"
    CANCELLED = "cancelled"


@dataclass
class AgentSession:
    """Mutable per-session state, owned by exactly one ``AgentLoop``."""
    id: str
    max_steps: int
    model: str
    system_prompt: str
    token_budget: int
    history: list[Message] = field(default_factory=list)
    current_step: int = 0
    state: AgentState = AgentState.AWAITING_MODEL


@dataclass(frozen=True)
class Done:
    """The model answered with text."""
    content: str
    steps: int

    @property
    def stopped(self) -> bool:
        return False


@dataclass(frozen=True)
class Stopped:
    """The run ended early.  ``reason`` is machine-readable; ``detail`` is for humans."""
    reason: StopReason
    steps: int
    detail: str = ""
    error: Optional[Exception] = None

    @property
    def stopped(self) -> bool:
        return True


LoopOutcome = Union[Done, Stopped]


def denial_result(name: str, reason: str = "") -> ToolCallResult:
    """Synthetic result for a call the permission gate refused."""
    why = f": {reason}" if reason and reason != "policy" else " by policy"
    return ToolCallResult(
        name, False,
        error=f"Permission denied{why}. The tool '{name}' was not executed.",
    )


class AgentLoop:
    """ReAct control loop for one session.

    Args:
        model: Model collaborator.
        tools: Tool registry (schemas are sent with every model call).
        session: Session state; a fresh one is built from config if omitted.
        prompt: Permission prompt callback (ASK and loop prompts).
        summarizer: Optional summarizer used when compacting history.
        session_store: Receives the pruned history on compaction and, with
            ``autosave``, the full history after every run.
        dispatcher: Parallel tool executor (defaults to one over ``tools``).
        loop_guard: Repetition detector (defaults per turn_limits).
        gate: Permission gate (defaults to one over ``loop_guard``/``prompt``).
        event_bus: Session event bus.
        autosave: Save history to ``session_store`` when a run ends.
    """

    def __init__(
        self,
        model: ModelClient,
        tools: ToolRegistry | None = None,
        *,
        session: AgentSession | None = None,
        prompt: PromptCallback | None = None,
        summarizer: "Summarizer | None" = None,
        session_store: "SessionManager | None" = None,
        dispatcher: ToolDispatcher | None = None,
        loop_guard: LoopGuard | None = None,
        gate: PermissionGate | None = None,
        event_bus: EventBus | None = None,
        autosave: bool = False,
    ):
        self.model = model
        self.tools = tools or ToolRegistry()
        self.session = session or AgentSession(
            id="",
            max_steps=get_limit("agent.max_steps"),
            model=getattr(model, "model", "") or config.MODEL,
            system_prompt=config.SYSTEM_PROMPT,
            token_budget=get_limit("agent.token_budget"),
        )
        if self.session.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.event_bus = event_bus or EventBus(self.session.id)
        self.session_store = session_store
        self.autosave = autosave
        self.dispatcher = dispatcher or ToolDispatcher(self.tools.execute)
        self.loop_guard = loop_guard or LoopGuard()
        self.gate = gate or PermissionGate(self.loop_guard, prompt=prompt, event_bus=self.event_bus)
        self.compactor = Compactor(
            ContextBudgetManager(),
            summarizer=summarizer,
            session_store=session_store,
            event_bus=self.event_bus,
        )
        self._cancel_event = threading.Event()
        self._closeables: list = []
        self.token_usage = {"input_tokens": 0, "output_tokens": 0, "api_calls": 0}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> AgentState:
        return self.session.state

    def run(self, task: str) -> LoopOutcome:
        """Run *task* to completion and return ``Done`` or ``Stopped``.

        The history carries over between runs; the step counter does not.
        """
        session = self.session
        self._cancel_event.clear()
        session.current_step = 0
        self._set_state(AgentState.AWAITING_MODEL, reason="new task")
        session.history.append(Message.user(task))
        self.event_bus.emit(
            USER_MESSAGE, level="info", msg=f"[User] {task}", data={"text": task},
        )
        try:
            outcome = self._loop()
        finally:
            if self.autosave and self.session_store is not None and session.id:
                self.session_store.save_history(
                    session.id, session.history,
                    metadata_updates={
                        "model": session.model,
                        "step_count": session.current_step,
                        "token_usage": dict(self.token_usage),
                    },
                )
        return self._finish(outcome)

    def cancel(self) -> None:
        """Abort the current run from any thread.

        The run ends as ``Stopped(CANCELLED)`` at the next checkpoint; tool
        results not yet appended are discarded.
        """
        self._cancel_event.set()
        self.event_bus.emit(STATE_CHANGE, level="info", msg="Cancellation requested")

    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def close(self) -> None:
        """Release the dispatcher's worker pool (waits for in-flight calls)."""
        self.dispatcher.shutdown()
        for resource in self._closeables:
            resource.close()
        self._closeables.clear()

    def __enter__(self) -> "AgentLoop":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _loop(self) -> LoopOutcome:
        session = self.session
        while True:
            if self.is_cancelled():
                return self._stopped(StopReason.CANCELLED, "Cancelled by user")

            session.current_step += 1
            if session.current_step > session.max_steps:
                session.current_step = session.max_steps
                return self._stopped(
                    StopReason.MAX_STEPS, f"Reached the limit of {session.max_steps} steps",
                )

            self._compact_if_needed()

            self._set_state(AgentState.AWAITING_MODEL)
            try:
                response = self._call_model()
            except ReactorError as e:
                return self._stopped(StopReason.MODEL_ERROR, str(e), error=e)
            if self.is_cancelled():
                return self._stopped(StopReason.CANCELLED, "Cancelled by user")

            if not response.has_tool_calls:
                session.history.append(Message.assistant(response.text))
                return Done(response.text, session.current_step)

            self._set_state(AgentState.EXECUTING_TOOLS)
            requests = response.tool_requests()
            outcome = self._execute_tools(requests)
            if outcome is not None:
                return outcome

    def _compact_if_needed(self) -> None:
        session = self.session
        self._set_state(AgentState.COMPACTING)
        result = self.compactor.maybe_compact(
            session.id, session.history, session.system_prompt, session.token_budget,
        )
        if result.performed and result.new_history is not None:
            session.history[:] = result.new_history
            logger.info(
                f"Compacted context: {result.tokens_before} -> {result.tokens_after} tokens",
                extra={"log_tag": "compaction"},
            )

    def _call_model(self):
        session = self.session
        self.event_bus.emit(
            LLM_CALL, level="debug",
            msg=f"Model call (step {session.current_step}/{session.max_steps}, "
                f"{len(session.history)} messages)",
            data={"step": session.current_step, "messages": len(session.history)},
        )
        try:
            response = self.model.send(session.system_prompt, session.history, self.tools.schemas())
        except Exception as e:
            err = ModelTransportError.wrap(e)
            self.event_bus.emit(
                LLM_ERROR, level="error", msg=f"Model call failed: {err}",
                data={"error": str(err), "type": type(e).__name__},
            )
            raise err from e

        self.token_usage["api_calls"] += 1
        self.token_usage["input_tokens"] += response.usage.input_tokens
        self.token_usage["output_tokens"] += response.usage.output_tokens
        self.event_bus.emit(
            LLM_RESPONSE, level="debug",
            msg=f"Model replied with {len(response.tool_calls)} tool call(s)"
                if response.has_tool_calls else "Model replied with text",
            data={
                "tool_calls": [tc.name for tc in response.tool_calls],
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        )
        return response

    def _execute_tools(self, requests: list[ToolCallRequest]) -> Optional[LoopOutcome]:
        """Gate, dispatch, and record one turn of tool calls.

        Returns a ``Stopped`` outcome if the turn must end the run, otherwise
        None after appending the assistant message and one tool message per
        call, in request order.
        """
        session = self.session
        results: dict[int, ToolCallResult] = {}
        allowed: list[tuple[int, ToolCallRequest]] = []

        for pos, req in enumerate(requests):
            verdict = self.gate.resolve(req.name, req.arguments, step=session.current_step)
            if isinstance(verdict, StopSignal):
                return self._stopped(StopReason.USER_STOPPED, verdict.reason)
            # A cancel can arrive while the prompt is waiting on the user
            if self.is_cancelled():
                return self._stopped(StopReason.CANCELLED, "Cancelled during permission check")
            if verdict.allowed:
                allowed.append((pos, req))
            else:
                results[pos] = denial_result(req.name, verdict.reason)
                self.event_bus.emit(
                    PERMISSION_DENIED, level="info",
                    msg=f"Denied {req.name}" + (f" ({verdict.reason})" if verdict.reason else ""),
                    data={"tool": req.name, "args": req.arguments, "reason": verdict.reason},
                )

        for _pos, req in allowed:
            self.event_bus.emit(
                TOOL_CALL, level="debug", msg=f"Tool call: {req.name}({req.arguments})",
                data={"tool": req.name, "args": req.arguments, "id": req.id},
            )
        try:
            # Requests beyond the dispatcher cap run as successive batches
            cap = self.dispatcher.max_batch
            for start in range(0, len(allowed), cap):
                chunk = allowed[start:start + cap]
                batch = self.dispatcher.execute_batch([req for _pos, req in chunk], self._cancel_event)
                for (pos, _req), result in zip(chunk, batch):
                    results[pos] = result
        except BatchCancelledError:
            return self._stopped(StopReason.CANCELLED, "Cancelled while tools were running")
        if self.is_cancelled():
            return self._stopped(StopReason.CANCELLED, "Cancelled while tools were running")

        tool_messages = []
        for pos, req in enumerate(requests):
            result = results[pos]
            self.event_bus.emit(
                TOOL_RESULT if result.success else TOOL_ERROR,
                level="debug" if result.success else "warning",
                msg=str(result),
                data={"tool": req.name, "id": req.id, "success": result.success,
                      "duration_ms": result.duration_ms, "error": result.error},
            )
            tool_messages.append(Message.tool_result(req.id, result.to_content()))

        # The call message and its answers land together so a stop never
        # leaves unanswered calls in the history
        session.history.append(Message.assistant_tool_calls(requests))
        session.history.extend(tool_messages)
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _stopped(self, reason: StopReason, detail: str, error: Exception | None = None) -> Stopped:
        return Stopped(reason, self.session.current_step, detail, error)

    def _finish(self, outcome: LoopOutcome) -> LoopOutcome:
        if isinstance(outcome, Done):
            self._set_state(AgentState.DONE)
            self.event_bus.emit(
                AGENT_RESPONSE, level="info", msg=f"[Agent] {outcome.content}",
                data={"text": outcome.content, "steps": outcome.steps},
            )
        else:
            self._set_state(AgentState.STOPPED, reason=outcome.reason.value)
            self.event_bus.emit(
                SESSION_END if outcome.reason is StopReason.CANCELLED else STATE_CHANGE,
                level="warning" if outcome.reason is StopReason.MODEL_ERROR else "info",
                msg=f"Stopped ({outcome.reason.value}): {outcome.detail}",
                data={"reason": outcome.reason.value, "steps": outcome.steps, "detail": outcome.detail},
            )
        return outcome

    def _set_state(self, new_state: AgentState, reason: str = "") -> None:
        """Transition to a new state, emitting an event."""
        old = self.session.state
        if old == new_state:
            return
        self.session.state = new_state
        suffix = f" ({reason})" if reason else ""
        self.event_bus.emit(
            STATE_CHANGE, level="debug",
            msg=f"{old.value} -> {new_state.value}{suffix}",
            data={"old": old.value, "new": new_state.value, "reason": reason},
        )


def create_agent(
    verbose: bool = False,
    model: str | None = None,
    *,
    client: ModelClient | None = None,
    tools: ToolRegistry | None = None,
    prompt: PromptCallback | None = None,
    max_steps: int | None = None,
    token_budget: int | None = None,
    system_prompt: str | None = None,
    session_id: str | None = None,
    persist: bool = True,
) -> AgentLoop:
    """Factory function to create a fully wired agent.

    Args:
        verbose: If True, log debug output to the console.
        model: Model name (default: config ``model``).
        client: Model client; an ``OpenAIAdapter`` is built from config if omitted.
        tools: Tool registry.
        prompt: Permission prompt callback.
        max_steps: Step ceiling (default: turn limit ``agent.max_steps``).
        token_budget: Context budget (default: turn limit ``agent.token_budget``).
        system_prompt: Override for config ``system_prompt``.
        session_id: Resume this saved session instead of starting a new one.
        persist: Save sessions, per-session log and event log under the data dir.

    Returns:
        Configured AgentLoop instance.
    """
    from .event_bus import DebugLogListener, EventLogWriter
    from .logging import attach_log_file, setup_logging
    from .session import SessionManager
    from .summarizer import LLMSummarizer

    log = setup_logging(verbose=verbose)
    model_name = model or config.MODEL

    if client is None:
        from .llm.openai_adapter import OpenAIAdapter

        api_key = config.get_api_key()
        if not api_key:
            raise ValueError("No API key found: set REACTOR_API_KEY or OPENAI_API_KEY")
        client = OpenAIAdapter(
            api_key, model_name, base_url=config.LLM_BASE_URL, timeout_ms=config.LLM_TIMEOUT_MS,
        )

    store = SessionManager() if persist else None
    history: list[Message] = []
    if store is not None:
        if session_id:
            history, _meta = store.load_history(session_id)
        else:
            session_id = store.create_session(model_name)
    session_id = session_id or ""

    event_bus = EventBus(session_id)
    event_bus.subscribe(DebugLogListener(log))
    writer = None
    if store is not None:
        attach_log_file(session_id)
        writer = EventLogWriter(store.event_log_path(session_id))
        event_bus.subscribe(writer)

    session = AgentSession(
        id=session_id,
        max_steps=max_steps or get_limit("agent.max_steps"),
        model=model_name,
        system_prompt=system_prompt or config.SYSTEM_PROMPT,
        token_budget=token_budget or get_limit("agent.token_budget"),
        history=history,
    )
    event_bus.emit(
        SESSION_START, level="info", msg=f"Session {session_id or '(ephemeral)'} started with {model_name}",
        data={"model": model_name, "resumed": bool(history)},
    )
    agent = AgentLoop(
        client,
        tools,
        session=session,
        prompt=prompt,
        summarizer=LLMSummarizer(client, config.SUMMARY_MODEL),
        session_store=store,
        event_bus=event_bus,
        autosave=store is not None,
    )
    if writer is not None:
        agent._closeables.append(writer)
    return agent
