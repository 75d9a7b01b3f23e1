"""agent/turn_limits.py — Central limits registry.

Every numeric knob of the agent loop lives here as a named constant:
step ceiling, context budget, loop-guard window, dispatcher pool, and
pruner retention.  Config.json overrides via ``"turn_limits"``.

Public API:
    get_limit(name)  — lookup (int), KeyError on typo
    reload()         — re-read config overrides
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Default limits
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, int] = {
    # Agent control loop
    "agent.max_steps":                  25,
    "agent.token_budget":             8000,
    # Loop guard (doom-loop detection)
    "loop_guard.window_size":           10,
    "loop_guard.threshold":              3,
    "loop_guard.cooldown_ms":         5000,
    # Parallel tool dispatcher
    "dispatcher.pool_size":             10,
    "dispatcher.max_batch":             10,
    "dispatcher.call_timeout_s":       120,
    "dispatcher.shutdown_grace_s":      30,
    # Permission gate: TTL of sticky ("always") choices
    "permissions.remember_ms":       60000,
    # History pruner
    "pruner.keep_tool_messages":         5,
    "pruner.summary_window":            10,
}

# ---------------------------------------------------------------------------
# Runtime state — overrides from config.json
# ---------------------------------------------------------------------------

_overrides: dict[str, int] = {}


def reload() -> None:
    """Re-read config.json overrides for turn limits.

    Called by ``config.reload_config()`` and at import time.
    """
    global _overrides
    import config
    _overrides = config.get("turn_limits", {})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_limit(name: str) -> int:
    """Return the effective limit for *name*.

    Raises ``KeyError`` if *name* is not in DEFAULTS (catches typos).
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown turn limit: {name!r}")
    override = _overrides.get(name)
    if override is not None:
        return int(override)
    return DEFAULTS[name]


# ---------------------------------------------------------------------------
# Initialize overrides at import time
# ---------------------------------------------------------------------------

try:
    reload()
except Exception:
    pass  # config may not be loadable yet (e.g., during testing)
