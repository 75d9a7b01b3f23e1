"""
Structured EventBus — one per agent session.

Every observable step of the control loop (model calls, tool calls,
permission decisions, loop detections, compactions, state changes) is
emitted as a ``SessionEvent``.  Listeners decide where events go:

    bus.emit() → SessionEvent → listeners[]
      ├── DebugLogListener → Python logger (console + per-session file)
      └── EventLogWriter   → events.jsonl in the session directory

The bus is constructed explicitly and passed to the components that need
it; there is no process-wide instance.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional


# ---- Event type constants ----

# Session lifecycle
SESSION_START = "session_start"
SESSION_END = "session_end"
STATE_CHANGE = "state_change"

# Conversation
USER_MESSAGE = "user_message"
AGENT_RESPONSE = "agent_response"

# LLM
LLM_CALL = "llm_call"
LLM_RESPONSE = "llm_response"
LLM_ERROR = "llm_error"

# Tool lifecycle
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
TOOL_ERROR = "tool_error"

# Guarding
PERMISSION_DENIED = "permission_denied"
PERMISSION_PROMPT = "permission_prompt"
LOOP_DETECTED = "loop_detected"

# Context budget
COMPACTION = "compaction"
SUMMARIZATION_ERROR = "summarization_error"

# Catch-all for debug-level events that don't need a specific type
DEBUG = "debug"


# ---- Routing tags ----
#   "display" — user-facing progress (CLI/TUI)
#   "console" — developer log output
#   "history" — persisted to the session's event log

INFRASTRUCTURE_TAGS: dict[str, frozenset[str]] = {
    SESSION_START:       frozenset({"console", "history"}),
    SESSION_END:         frozenset({"display", "console", "history"}),
    STATE_CHANGE:        frozenset({"console"}),
    USER_MESSAGE:        frozenset({"display", "console", "history"}),
    AGENT_RESPONSE:      frozenset({"display", "console", "history"}),
    LLM_CALL:            frozenset({"console"}),
    LLM_RESPONSE:        frozenset({"console"}),
    LLM_ERROR:           frozenset({"display", "console", "history"}),
    TOOL_CALL:           frozenset({"display", "console", "history"}),
    TOOL_RESULT:         frozenset({"display", "console", "history"}),
    TOOL_ERROR:          frozenset({"display", "console", "history"}),
    PERMISSION_DENIED:   frozenset({"display", "console", "history"}),
    PERMISSION_PROMPT:   frozenset({"console", "history"}),
    LOOP_DETECTED:       frozenset({"display", "console", "history"}),
    COMPACTION:          frozenset({"display", "console", "history"}),
    SUMMARIZATION_ERROR: frozenset({"console", "history"}),
    DEBUG:               frozenset({"console"}),
}

_SUMMARY_LIMIT = 120


def _resolve_tags(event_type: str) -> frozenset[str]:
    return INFRASTRUCTURE_TAGS.get(event_type, frozenset({"console"}))


# ---- SessionEvent ----

@dataclass(frozen=True)
class SessionEvent:
    """A single structured event in the session.

    Fields:
        id: Session-unique event ID (e.g. "evt_0001").
        type: Event type constant (e.g. "tool_call", "compaction").
        ts: ISO 8601 timestamp (UTC, millisecond precision).
        agent: Source component name.
        level: Log level (debug/info/warning/error).
        summary: Short one-liner (<=120 chars).
        details: Full context, multi-line OK.
        data: Structured machine-readable payload.
        tags: Routing tags.
    """
    id: str
    type: str
    ts: str
    agent: str
    level: str
    summary: str
    details: str
    data: dict
    tags: frozenset

    @property
    def msg(self) -> str:
        return self.summary


class EventBus:
    """Per-session event bus with synchronous listener dispatch.

    Thread-safe: emit() may be called from dispatcher worker threads.
    """

    def __init__(self, session_id: str = ""):
        self._events: list[SessionEvent] = []
        self._lock = threading.Lock()
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self.session_id = session_id
        self._next_event_id: int = 0

    def emit(
        self,
        type: str,
        *,
        agent: str = "agent",
        level: str = "debug",
        msg: str = "",
        summary: str = "",
        details: str = "",
        data: Optional[dict] = None,
    ) -> SessionEvent:
        """Create, store, and dispatch a SessionEvent.

        Args:
            type: Event type constant (e.g. TOOL_CALL, COMPACTION).
            agent: Source component name.
            level: Log level (debug/info/warning/error).
            msg: Free-form message; used as details, and as summary
                 (truncated) when no summary is given.
            summary: Short one-liner.
            details: Full context.
            data: Structured payload.

        Returns:
            The created SessionEvent.
        """
        if not summary:
            summary = msg if len(msg) <= _SUMMARY_LIMIT else msg[: _SUMMARY_LIMIT - 3] + "..."
        if not details:
            details = msg or summary

        with self._lock:
            self._next_event_id += 1
            event = SessionEvent(
                id=f"evt_{self._next_event_id:04d}",
                type=type,
                ts=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                agent=agent,
                level=level,
                summary=summary,
                details=details,
                data=data or {},
                tags=_resolve_tags(type),
            )
            self._events.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                pass  # Never let a listener break the emitter
        return event

    def subscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Register a listener called synchronously on each emit()."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Remove a previously registered listener."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def get_events(
        self,
        *,
        types: Optional[set[str]] = None,
        tags: Optional[set[str]] = None,
        since_index: int = 0,
    ) -> list[SessionEvent]:
        """Return events filtered by type and/or tag."""
        with self._lock:
            events = self._events[since_index:]
        result = []
        for e in events:
            if types and e.type not in types:
                continue
            if tags and not (e.tags & frozenset(tags)):
                continue
            result.append(e)
        return result

    def clear(self) -> None:
        """Remove all stored events."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# ---- Listeners ----

class DebugLogListener:
    """Writes console-tagged events (and all warnings/errors) to a logger."""

    _LEVEL_MAP = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    # Event type -> log_tag used by the console/file formatters.
    _TYPE_TO_TAG = {
        USER_MESSAGE: "user_message",
        AGENT_RESPONSE: "agent_response",
        TOOL_CALL: "tool",
        TOOL_RESULT: "tool",
        TOOL_ERROR: "error",
        LLM_ERROR: "error",
        PERMISSION_DENIED: "permission",
        PERMISSION_PROMPT: "permission",
        LOOP_DETECTED: "loop",
        COMPACTION: "compaction",
        SUMMARIZATION_ERROR: "error",
    }

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def __call__(self, event: SessionEvent) -> None:
        if "console" not in event.tags and event.level not in ("warning", "error"):
            return
        level = self._LEVEL_MAP.get(event.level, logging.DEBUG)
        tag = self._TYPE_TO_TAG.get(event.type, "")
        self._logger.log(level, event.summary, extra={"log_tag": tag})


class EventLogWriter:
    """Appends history-tagged events (plus warnings/errors) to a JSONL file.

    The file is opened in append mode and flushed after each write,
    so it survives crashes and can be read while the session is active.
    """

    def __init__(self, path: Path):
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(path, "a", encoding="utf-8")
        self._lock = threading.Lock()

    def __call__(self, event: SessionEvent) -> None:
        if "history" not in event.tags and event.level not in ("warning", "error"):
            return
        record = {
            "id": event.id,
            "type": event.type,
            "ts": event.ts,
            "agent": event.agent,
            "level": event.level,
            "summary": event.summary,
            "details": event.details,
            "data": event.data,
            "tags": sorted(event.tags),
        }
        with self._lock:
            self._file.write(json.dumps(record, default=str) + "\n")
            self._file.flush()

    def close(self) -> None:
        """Flush and close the underlying file."""
        with self._lock:
            if not self._file.closed:
                self._file.close()


def load_event_log(path: Path) -> list[dict]:
    """Read a JSONL event log file back into a list of dicts.

    Returns an empty list if the file doesn't exist; unparseable lines
    are skipped.
    """
    if not path.exists():
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return events
