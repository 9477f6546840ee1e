"""Shared flowengine configuration utilities.

Centralises reading of ~/.flowengine/configuration.json (or the file named by
FLOWENGINE_CONFIG) so the executor, the built-in nodes and the CLI share one
implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MAX_TOKENS = 4096
DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_SUBFLOW_TIMEOUT = 120.0

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWENGINE_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path, honouring FLOWENGINE_CONFIG."""
    override = os.environ.get("FLOWENGINE_CONFIG")
    return Path(override) if override else FLOWENGINE_CONFIG_FILE


def get_flowengine_config() -> dict[str, Any]:
    """Load the configuration file. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_server_url() -> str:
    """Base URL of the prediction API, used for sub-flow calls.

    FLOWENGINE_BASE_URL wins; otherwise the URL is built from PROTOCOL, HOST
    and SERVER_PORT (defaults http://localhost:3000).
    """
    explicit = os.environ.get("FLOWENGINE_BASE_URL") or get_flowengine_config().get("base_url")
    if explicit:
        return str(explicit).rstrip("/")
    try:
        port = int(os.environ.get("SERVER_PORT", ""))
    except ValueError:
        port = 3000
    host = os.environ.get("HOST", "localhost")
    protocol = os.environ.get("PROTOCOL", "http")
    return f"{protocol}://{host}:{port}"


def get_preferred_model() -> str:
    """Return the default model string (e.g. 'openai/gpt-4o-mini')."""
    llm = get_flowengine_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_flowengine_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the LLM API key from the environment variable named in configuration."""
    llm = get_flowengine_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def _engine_setting(key: str, default: Any) -> Any:
    return get_flowengine_config().get("engine", {}).get(key, default)


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from the configuration file and environment."""

    base_url: str = field(default_factory=get_server_url)
    subflow_timeout_seconds: float = field(
        default_factory=lambda: float(
            _engine_setting("subflow_timeout_seconds", DEFAULT_SUBFLOW_TIMEOUT)
        )
    )
    api_override_enabled: bool = field(
        default_factory=lambda: bool(_engine_setting("api_override_enabled", True))
    )
    variable_overrides_enabled: bool = field(
        default_factory=lambda: bool(_engine_setting("variable_overrides_enabled", True))
    )
    # {node label: [input names that may be overridden]}; empty means all
    node_overrides: dict[str, list[str]] = field(
        default_factory=lambda: dict(_engine_setting("node_overrides", {}))
    )
    parallel_tiers: bool = field(
        default_factory=lambda: bool(_engine_setting("parallel_tiers", False))
    )
    default_model: str = field(default_factory=get_preferred_model)
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
