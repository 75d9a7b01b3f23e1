import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secret — stays in .env (OPENAI_API_KEY, or REACTOR_API_KEY for any
# OpenAI-compatible endpoint)

# User config — loaded from ~/.reactor/config.json (primary)
# or project-root config.json (fallback).
CONFIG_PATH = Path.home() / ".reactor" / "config.json"
_LOCAL_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"
_user_config: dict = {}


def _load_config() -> dict:
    # Project-local config.json as base, user home config overlaid on top
    merged: dict = {}
    for path in (_LOCAL_CONFIG_PATH, CONFIG_PATH):
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    merged.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                pass
    return merged


def get(key: str, default=None):
    """Get a config value by dot-separated key. E.g. get('agent.token_budget', 8000)"""
    keys = key.split(".")
    val = _user_config
    for k in keys:
        if isinstance(val, dict):
            val = val.get(k)
        else:
            return default
    return val if val is not None else default


_user_config = _load_config()


# ---- Data directory -----------------------------------------------------------
# Single source of truth for the base data directory (logs, sessions).
# Priority: REACTOR_DIR env var > "data_dir" config key > ~/.reactor

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``REACTOR_DIR`` environment variable (highest — useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.reactor`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("REACTOR_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".reactor"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- Model provider ------------------------------------------------------------
# Any endpoint speaking the OpenAI Chat Completions protocol works (OpenAI,
# GLM/Zhipu, DeepSeek, Ollama, vLLM, ...). ``base_url`` selects the endpoint.

_API_KEY_ENV_VARS = ("REACTOR_API_KEY", "OPENAI_API_KEY")


def get_api_key() -> str | None:
    """Return the model API key.

    ``REACTOR_API_KEY`` wins over ``OPENAI_API_KEY`` so that a compatible
    provider can be used without clobbering an existing OpenAI key.
    """
    for env_key in _API_KEY_ENV_VARS:
        val = os.getenv(env_key)
        if val:
            return val
    return None


MODEL = get("model", "gpt-4o-mini")
SUMMARY_MODEL = get("summary_model") or MODEL
LLM_BASE_URL = get("base_url")
LLM_TIMEOUT_MS = get("llm_timeout_ms", 300_000)
SYSTEM_PROMPT = get(
    "system_prompt",
    "You are a coding assistant. Use the available tools to inspect and "
    "change the workspace, then answer the user's task concisely.",
)
CONSOLE_FORMAT = get("console_format", "simple")  # "full", "simple", "clean"


def reload_config() -> None:
    """Re-read config from disk and reassign all module-level constants.

    Existing sessions keep their current client/model; only new sessions
    pick up changes.
    """
    global _user_config
    global MODEL, SUMMARY_MODEL, LLM_BASE_URL, LLM_TIMEOUT_MS
    global SYSTEM_PROMPT, CONSOLE_FORMAT

    load_dotenv(override=True)

    _user_config = _load_config()
    _reset_data_dir()

    MODEL = get("model", "gpt-4o-mini")
    SUMMARY_MODEL = get("summary_model") or MODEL
    LLM_BASE_URL = get("base_url")
    LLM_TIMEOUT_MS = get("llm_timeout_ms", 300_000)
    SYSTEM_PROMPT = get("system_prompt", SYSTEM_PROMPT)
    CONSOLE_FORMAT = get("console_format", "simple")

    # Reload turn limits overrides from config
    try:
        from agent.turn_limits import reload as _reload_turn_limits

        _reload_turn_limits()
    except ImportError:
        pass
