#!/usr/bin/env python3
"""Reactor — ReAct coding agent, command-line entry point.

Usage:
    reactor                              # Interactive mode
    reactor --verbose                    # Show tool calls and state changes
    reactor --continue                   # Resume most recent session
    reactor --session ID                 # Resume specific session
    reactor "Fix the failing test"       # Single-task mode
    reactor --tools mypkg.tools          # Load tools from a module
    reactor --no-color                   # Disable ANSI colors

The module given to ``--tools`` must define ``register_tools(registry)``.

Slash commands (type /help for full list):
    /quit        - Exit
    /status      - Show session info (steps, tokens, history size)
    /sessions    - List saved sessions on disk
    /errors      - Show recent errors from logs
    /reload      - Re-read config.json and .env (new sessions pick up changes)
    /help        - Show available commands
Anything without a leading / is sent to the agent as a task.
"""

import argparse
import importlib
import os
import sys
import threading

# readline is optional (not available on Windows without pyreadline3)
try:
    import readline
    _READLINE_AVAILABLE = True
except ImportError:
    _READLINE_AVAILABLE = False

# ---- ANSI colors ----

_USE_COLOR = True


def _c(code: str, text: str) -> str:
    if not _USE_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def dim(text: str) -> str:
    return _c("2", text)


def cyan(text: str) -> str:
    return _c("36", text)


def green(text: str) -> str:
    return _c("32", text)


def yellow(text: str) -> str:
    return _c("33", text)


def red(text: str) -> str:
    return _c("31", text)


def bold(text: str) -> str:
    return _c("1", text)


# ---- Readline ----

def _history_path() -> str:
    from config import get_data_dir
    return os.path.join(str(get_data_dir()), ".cli_history")


_SLASH_COMMANDS = [
    ("/errors",   "Show recent errors from logs"),
    ("/exit",     "Exit (alias for /quit)"),
    ("/help",     "Show available commands"),
    ("/quit",     "Exit"),
    ("/reload",   "Re-read config.json and .env"),
    ("/sessions", "List saved sessions on disk"),
    ("/status",   "Show session info (steps, tokens, history)"),
]

_COMMAND_NAME_WIDTH = max(len(c[0]) for c in _SLASH_COMMANDS)


def _slash_completer(text, state):
    """Readline completer for slash commands."""
    if text.startswith("/"):
        matches = [c[0] for c in _SLASH_COMMANDS if c[0].startswith(text)]
    else:
        matches = []
    if state < len(matches):
        return matches[state]
    return None


def setup_readline():
    if not _READLINE_AVAILABLE:
        return
    readline.set_history_length(500)
    readline.set_completer(_slash_completer)
    readline.set_completer_delims(' \t\n')
    readline.parse_and_bind('tab: complete')
    try:
        readline.read_history_file(_history_path())
    except FileNotFoundError:
        pass


def save_readline():
    if not _READLINE_AVAILABLE:
        return
    try:
        path = _history_path()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        readline.write_history_file(path)
    except OSError:
        pass


# ---- Display ----

def display_event(event) -> None:
    """Print user-facing progress for display-tagged events (verbose mode)."""
    from agent.event_bus import (
        COMPACTION, LOOP_DETECTED, PERMISSION_DENIED, TOOL_CALL, TOOL_ERROR, TOOL_RESULT,
    )

    if "display" not in event.tags:
        return
    if event.type == TOOL_CALL:
        print(dim(f"  -> {event.summary}"))
    elif event.type == TOOL_RESULT:
        print(dim(f"  <- {event.summary}"))
    elif event.type == TOOL_ERROR:
        print(yellow(f"  <- {event.summary}"))
    elif event.type in (PERMISSION_DENIED, LOOP_DETECTED):
        print(yellow(f"  ! {event.summary}"))
    elif event.type == COMPACTION:
        print(dim(f"  ~ {event.summary}"))


def print_outcome(outcome) -> None:
    from agent.core import Done, StopReason

    if outcome is None:
        print(red("  The task failed with an unexpected error. See /errors or the session log."))
        return
    if isinstance(outcome, Done):
        print()
        print(outcome.content)
        print(dim(f"  ({outcome.steps} step{'s' if outcome.steps != 1 else ''})"))
        return
    if outcome.reason is StopReason.MAX_STEPS:
        print(yellow(f"  Ran out of steps after {outcome.steps}. {outcome.detail}"))
    elif outcome.reason is StopReason.USER_STOPPED:
        print(yellow(f"  Stopped at your request. {outcome.detail}"))
    elif outcome.reason is StopReason.CANCELLED:
        print(yellow("  Cancelled."))
    else:
        print(red(f"  The model API failed: {outcome.detail}"))


def run_task(agent, task: str):
    """Run *task* on a worker thread so Ctrl-C can cancel it cleanly.

    Returns the loop outcome, or None if the run raised; the failure is
    logged with its stack trace and shows up under /errors.
    """
    result = {}

    def _target():
        try:
            result["outcome"] = agent.run(task)
        except Exception as e:
            from agent.logging import log_error
            log_error("Task failed with an unexpected error", e, context={
                "session": agent.session.id or "-",
                "task": task[:200],
            })

    worker = threading.Thread(target=_target, name="reactor-turn", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        print(yellow("\n  Interrupted, cancelling..."))
        agent.cancel()
        worker.join()
    return result.get("outcome")


def load_tools(module_names: list[str]):
    from agent.tools import ToolRegistry

    registry = ToolRegistry()
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register_tools", None)
        if register is None:
            raise SystemExit(f"Module {name!r} has no register_tools(registry) function")
        register(registry)
    return registry


# ---- Slash commands ----

def cmd_help():
    print()
    for name, desc in _SLASH_COMMANDS:
        print(f"  {bold(name.ljust(_COMMAND_NAME_WIDTH + 4))}{dim(desc)}")


def cmd_status(agent):
    s = agent.session
    usage = agent.token_usage
    print()
    print(f"  Session:  {bold(s.id or '(not saved)')}")
    print(f"  Model:    {s.model}")
    print(f"  State:    {s.state.value}")
    print(f"  History:  {len(s.history)} messages")
    print(f"  Budget:   {s.token_budget:,} tokens, {s.max_steps} steps per task")
    print(f"  Usage:    {usage['input_tokens']:,} in / {usage['output_tokens']:,} out, "
          f"{usage['api_calls']} API calls")


def cmd_sessions(agent):
    store = agent.session_store
    if store is None:
        print(dim("  Sessions are not being saved (--no-save)."))
        return
    sessions = store.list_sessions()
    if not sessions:
        print(dim("  No saved sessions."))
        return
    print()
    for meta in sessions[:20]:
        marker = "*" if meta["id"] == agent.session.id else " "
        preview = meta.get("last_message_preview", "")[:50]
        print(f" {marker} {bold(meta['id'])}  {dim(meta.get('updated_at', '')[:19])}  {preview}")


def cmd_reload():
    import config
    config.reload_config()
    print(green(f"  Configuration reloaded; new sessions use model {config.MODEL}."))


def cmd_errors():
    from agent.logging import print_recent_errors
    print_recent_errors()


def print_welcome(agent):
    print()
    print("=" * 60)
    print("  Reactor coding agent")
    print("=" * 60)
    print()
    print(f"Model: {agent.session.model}   Tools: {len(agent.tools)}")
    print("Type a task, or /help for available commands. Ctrl-C cancels a run.")
    print("-" * 60)


# ---- Main ----

def main():
    global _USE_COLOR

    parser = argparse.ArgumentParser(description="Reactor - ReAct coding agent")
    parser.add_argument(
        "command", nargs="?", default=None,
        help="Single task to execute (non-interactive mode)",
    )
    parser.add_argument("--model", "-m", default=None, help="Model name (default: config 'model')")
    parser.add_argument("--max-steps", type=int, default=None, help="Step limit per task")
    parser.add_argument("--tools", action="append", default=[], metavar="MODULE",
                        help="Import tools from MODULE (repeatable)")
    parser.add_argument(
        "--no-color", action="store_true",
        help="Disable ANSI color output",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Show tool calls and debug logging",
    )
    parser.add_argument(
        "--continue", "-c", dest="resume_latest", action="store_true",
        help="Resume the most recent saved session",
    )
    parser.add_argument(
        "--session", "-s", default=None,
        help="Resume a specific saved session by ID",
    )
    parser.add_argument("--no-save", action="store_true", help="Do not persist the session")
    args = parser.parse_args()

    if args.no_color:
        _USE_COLOR = False

    from agent.core import create_agent
    from agent.prompt_handlers import ConsolePrompt
    from agent.session import SessionManager

    session_id = args.session
    if args.resume_latest and not session_id and not args.no_save:
        session_id = SessionManager().get_most_recent_session()
        if session_id is None:
            print("No saved sessions found. Starting new session.")

    try:
        agent = create_agent(
            verbose=args.verbose,
            model=args.model,
            tools=load_tools(args.tools),
            prompt=ConsolePrompt(),
            max_steps=args.max_steps,
            session_id=session_id,
            persist=not args.no_save,
        )
    except FileNotFoundError:
        print(red(f"Session not found: {session_id}"))
        sys.exit(1)
    except ValueError as e:
        print(red(f"Error: {e}"))
        sys.exit(1)

    if args.verbose:
        agent.event_bus.subscribe(display_event)

    # Single-task mode
    if args.command:
        try:
            outcome = run_task(agent, args.command)
            print_outcome(outcome)
        finally:
            agent.close()
        sys.exit(0 if outcome is not None and not outcome.stopped else 1)

    # Interactive mode
    setup_readline()
    if session_id:
        print(f"Resumed session {bold(session_id)} ({len(agent.session.history)} messages)")
    print_welcome(agent)

    try:
        while True:
            try:
                user_input = input(cyan("\n> ")).strip()
            except EOFError:
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                cmd = user_input[1:].lower().strip()
                if cmd in ("quit", "exit", "q"):
                    break
                elif cmd == "help":
                    cmd_help()
                elif cmd == "status":
                    cmd_status(agent)
                elif cmd == "sessions":
                    cmd_sessions(agent)
                elif cmd == "reload":
                    cmd_reload()
                elif cmd == "errors":
                    cmd_errors()
                else:
                    print(red(f"  Unknown command: /{cmd}"))
                    print(dim("  Type /help for available commands."))
                continue

            outcome = run_task(agent, user_input)
            print_outcome(outcome)

    except KeyboardInterrupt:
        pass
    finally:
        print()
        save_readline()
        agent.close()
        if agent.session.id:
            print(f"Session saved as {bold(agent.session.id)}. Goodbye.")
        else:
            print("Goodbye.")


if __name__ == "__main__":
    main()
