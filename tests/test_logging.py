"""Tests for session log files and the recent-errors readback."""

import logging
import os
import time
from unittest import mock

import pytest

import config
from agent.logging import (
    LOGGER_NAME,
    attach_log_file,
    get_log_dir,
    get_logger,
    get_recent_errors,
    log_error,
    print_recent_errors,
    set_session_id,
    setup_logging,
    tagged,
)


@pytest.fixture
def reactor_logger(data_dir):
    """Configured reactor logger; handlers and propagation restored afterwards."""
    logger = logging.getLogger(LOGGER_NAME)
    saved_handlers, saved_propagate = list(logger.handlers), logger.propagate
    yield setup_logging(verbose=False)
    for handler in logger.handlers:
        if handler not in saved_handlers:
            handler.close()
    logger.handlers[:] = saved_handlers
    logger.propagate = saved_propagate
    set_session_id("")


def write_log(name, lines, age_days=0):
    log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / name
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    if age_days:
        stamp = time.time() - age_days * 86400
        os.utime(path, (stamp, stamp))
    return path


class TestLogFile:

    def test_log_error_writes_context_and_traceback(self, reactor_logger):
        path = attach_log_file("s1")
        try:
            raise ValueError("bad handle")
        except ValueError as e:
            log_error("Tool registry failed", e, context={"tool": "grep"})

        content = path.read_text(encoding="utf-8")
        assert "| ERROR    | reactor | s1 | error | Tool registry failed" in content
        assert "  tool: grep" in content
        assert "Traceback (most recent call last)" in content
        assert "ValueError: bad handle" in content

    def test_new_session_replaces_file_handler(self, reactor_logger):
        first = attach_log_file("s1")
        second = attach_log_file("s2")
        reactor_logger.warning("after switch")

        file_handlers = [h for h in reactor_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert "after switch" not in first.read_text(encoding="utf-8")
        assert "| s2 |" in second.read_text(encoding="utf-8")

    def test_tagged_console_shows_only_visible_tags(self, reactor_logger, capsys):
        with mock.patch.object(config, "get", return_value="tagged"):
            logger = setup_logging()
        logger.info("routine detail")
        logger.debug("grep -> 3 hits", extra=tagged("tool"))

        err = capsys.readouterr().err
        assert "grep -> 3 hits" in err
        assert "routine detail" not in err

    def test_get_logger_configures_once(self, reactor_logger):
        reactor_logger.handlers.clear()
        with mock.patch.object(config, "get", return_value="simple"):
            logger = get_logger()
            handlers = list(logger.handlers)
            assert get_logger() is logger
        assert len(handlers) == 1
        assert logger.handlers == handlers


class TestRecentErrors:

    def test_reads_warnings_and_errors_with_details(self, reactor_logger):
        attach_log_file("s1")
        reactor_logger.info("routine")
        reactor_logger.warning("Tool grep timed out", extra=tagged("tool"))
        log_error("Model call failed", context={"step": 3})

        errors = get_recent_errors()
        assert [(e["level"], e["tag"], e["message"]) for e in errors] == [
            ("WARNING", "tool", "Tool grep timed out"),
            ("ERROR", "error", "Model call failed"),
        ]
        assert errors[0]["session_id"] == "s1"
        assert errors[0]["details"] == []
        assert errors[1]["details"] == ["  step: 3"]

    def test_skips_old_files_and_applies_limit(self, data_dir):
        write_log("agent_old.log", [
            "2026-01-01 10:00:00 | ERROR    | reactor | old |  | stale failure",
        ], age_days=30)
        write_log("agent_new.log", [
            f"2026-03-02 10:00:0{i} | ERROR    | reactor | new | error | failure {i}" for i in range(3)
        ])

        errors = get_recent_errors(days=7, limit=2)
        assert [e["message"] for e in errors] == ["failure 0", "failure 1"]
        assert {e["session_id"] for e in errors} == {"new"}

    def test_no_logs(self, data_dir, capsys):
        assert get_recent_errors() == []
        print_recent_errors()
        assert "No warnings or errors" in capsys.readouterr().out
