"""
Logging configuration for Reactor.

Two logging destinations:

  - File: one per session, always DEBUG, full detail
    Format: "timestamp | level | name | session_id | tag | message"
  - Console (stderr): DEBUG if --verbose, WARNING+ otherwise
    Config console_format options:
    - "full"   — same structured format as the file handler
    - "simple" — (default) bare messages for DEBUG/INFO, [LEVEL] prefix for WARNING+
    - "tagged" — curated tagged records only (tool calls, loops, compactions, errors)
    - "clean"  — no console output at all (file logging still active)

Log files are stored in ~/.reactor/logs/ with one file per session.
"""

import logging
import re
import sys
import time
import traceback
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from config import get_data_dir

LOGGER_NAME = "reactor"

# Tags shown by the "tagged" console format.
# Tag a log call with ``extra=tagged("my_tag")`` and add ``"my_tag"`` here.
VISIBLE_TAGS = frozenset({
    "tool",         # tool calls and results
    "permission",   # prompts and denials
    "loop",         # loop guard warnings
    "compaction",   # context compaction
    "error",        # log_error() records and tool/model failures
})

_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(session_id)s | %(log_tag)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def tagged(tag: str) -> dict:
    """Return ``extra`` dict for logger calls: ``logger.debug("...", extra=tagged("x"))``."""
    return {"log_tag": tag}


def get_log_dir() -> Path:
    return get_data_dir() / "logs"


# Module-level state (shared across re-inits)
_session_filter: Optional["_SessionFilter"] = None


class _SessionFilter(logging.Filter):
    """Injects session_id into every log record."""

    def __init__(self) -> None:
        super().__init__()
        self.session_id = ""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self.session_id or "-"
        if not hasattr(record, "log_tag"):
            record.log_tag = ""
        return True


class _ConsoleFormatter(logging.Formatter):
    """Console formatter: shows [LEVEL] prefix only for WARNING and above."""

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            return f"  [{record.levelname}] {record.getMessage()}"
        return f"  {record.getMessage()}"


class _TagFilter(logging.Filter):
    """Pass only records tagged with a key in VISIBLE_TAGS."""

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "log_tag", "") in VISIBLE_TAGS


def _ensure_session_filter() -> "_SessionFilter":
    global _session_filter
    if _session_filter is None:
        _session_filter = _SessionFilter()
    return _session_filter


def attach_log_file(session_id: str) -> Path:
    """Attach a per-session file handler.

    Creates or appends to agent_{session_id}.log and tags subsequent
    records with *session_id*.
    """
    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"agent_{session_id}.log"

    logger = logging.getLogger(LOGGER_NAME)
    # Remove any existing file handler (e.g. from a previous session)
    for h in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
        logger.removeHandler(h)
        h.close()

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(file_handler)
    set_session_id(session_id)

    logger.info("=" * 60)
    logger.info(f"Session started at {datetime.now().isoformat()}")
    logger.info(f"Log file: {log_file}")
    return log_file


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure console-only logging for the agent.

    File handlers are attached later by ``attach_log_file()`` once a
    session ID is known.

    Args:
        verbose: If True, show DEBUG level on console; otherwise WARNING+.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level
    logger.propagate = False

    # Clear existing handlers (in case of re-init)
    logger.handlers.clear()

    # Reuse the filter instance so session_id survives re-inits
    session_filter = _ensure_session_filter()
    if session_filter not in logger.filters:
        logger.addFilter(session_filter)

    import config as _config
    console_format = _config.get("console_format", "simple")

    if console_format != "clean":
        console_handler = logging.StreamHandler(sys.stderr)
        if console_format == "tagged":
            console_handler.setLevel(logging.DEBUG)
            console_handler.addFilter(_TagFilter())
            console_handler.setFormatter(_ConsoleFormatter())
        elif console_format == "full":
            console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
            console_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
        else:
            # "simple" (default)
            console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
            console_handler.setFormatter(_ConsoleFormatter())
        logger.addHandler(console_handler)
    # "clean" adds no console handler

    return logger


def get_logger() -> logging.Logger:
    """The reactor logger, configured with defaults on first use."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        return setup_logging(verbose=False)
    return logger


def set_session_id(session_id: str) -> None:
    """Set the session ID stamped on subsequent log records."""
    _ensure_session_filter().session_id = session_id


def log_error(
    message: str,
    exc: Optional[BaseException] = None,
    context: Optional[dict] = None,
) -> None:
    """Log an unexpected failure with its context and stack trace.

    The record carries the ``error`` tag, so it shows in the "tagged"
    console format and is picked up by ``get_recent_errors``.
    """
    lines = [message]
    for key, value in (context or {}).items():
        lines.append(f"  {key}: {value}")
    if exc is not None:
        lines.append("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())
    get_logger().error("\n".join(lines), extra=tagged("error"))


# One file-handler record header; lines that do not match continue the
# previous record (context lines, tracebacks).
_RECORD_RE = re.compile(
    r"^(?P<ts>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) \| (?P<level>[A-Z]+) *\| "
    r"(?P<name>[^|]*?) \| (?P<session>[^|]*?) \| (?P<tag>[^|]*?) \| (?P<message>.*)$"
)

_REPORTED_LEVELS = ("WARNING", "ERROR", "CRITICAL")


def _read_records(path: Path) -> Iterator[dict]:
    record = None
    with open(path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.rstrip("\n")
            match = _RECORD_RE.match(line)
            if match is None:
                if record is not None:
                    record["details"].append(line)
                continue
            if record is not None:
                yield record
            record = {
                "timestamp": match["ts"],
                "level": match["level"],
                "session_id": match["session"],
                "tag": match["tag"],
                "message": match["message"],
                "details": [],
            }
    if record is not None:
        yield record


def get_recent_errors(days: int = 7, limit: int = 50) -> list[dict]:
    """Warnings and errors from session logs touched in the last *days*.

    Log files are read newest first; each entry has timestamp, level,
    session_id, tag, message and details (continuation lines).
    """
    cutoff = time.time() - days * 86400
    logs = [p for p in get_log_dir().glob("agent_*.log") if p.stat().st_mtime >= cutoff]
    logs.sort(key=lambda p: p.stat().st_mtime, reverse=True)

    found: list[dict] = []
    for path in logs:
        try:
            found.extend(r for r in _read_records(path) if r["level"] in _REPORTED_LEVELS)
        except OSError:
            continue
        if len(found) >= limit:
            break
    return found[:limit]


def print_recent_errors(days: int = 7, limit: int = 10, max_details: int = 5) -> None:
    """Print ``get_recent_errors`` for the /errors command."""
    entries = get_recent_errors(days=days, limit=limit)
    if not entries:
        print(f"No warnings or errors logged in the last {days} days.")
        return

    print(f"Recent warnings and errors (last {days} days, up to {limit}):")
    for n, entry in enumerate(entries, 1):
        print(f"\n{n}. {entry['timestamp']}  {entry['level']}  session {entry['session_id']}")
        print(f"   {entry['message']}")
        details = entry["details"]
        for line in details[:max_details]:
            print(f"   {line}")
        if len(details) > max_details:
            print(f"   ... {len(details) - max_details} more line(s)")
    print(f"\nLogs: {get_log_dir()}")
