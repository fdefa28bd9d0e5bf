"""Shared flowgate configuration utilities.

Centralises reading of ~/.flowgate/configuration.json so that the engine,
the HTTP host and the CLI share one implementation. The path can be
overridden with the FLOWGATE_CONFIG environment variable.

Example file:

    {
      "llm": {"provider": "anthropic", "model": "claude-haiku-4-5-20251001",
              "api_key_env_var": "ANTHROPIC_API_KEY"},
      "timeouts": {"agent": 120, "scrape": 30},
      "store": {"backend": "file", "path": "~/.flowgate/store"},
      "server": {"port": 8080}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MAX_TOKENS = 4096
DEFAULT_MODEL = "anthropic/claude-haiku-4-5-20251001"

# Seconds, per node kind. Condition and approval nodes make no capability calls.
DEFAULT_NODE_TIMEOUTS: dict[str, float] = {
    "agent": 120.0,
    "extract": 120.0,
    "scrape": 60.0,
}

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWGATE_CONFIG_FILE = Path.home() / ".flowgate" / "configuration.json"


def get_config_path() -> Path:
    """Return the configuration file path, honouring FLOWGATE_CONFIG."""
    override = os.environ.get("FLOWGATE_CONFIG")
    return Path(override).expanduser() if override else FLOWGATE_CONFIG_FILE


def get_flowgate_config() -> dict[str, Any]:
    """Load configuration JSON. Missing or unreadable files yield {}."""
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


def get_preferred_model() -> str:
    """Return the configured model string (e.g. 'anthropic/claude-haiku-4-5-20251001')."""
    llm = get_flowgate_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_max_tokens() -> int:
    """Return the configured max_tokens, falling back to DEFAULT_MAX_TOKENS."""
    return get_flowgate_config().get("llm", {}).get("max_tokens", DEFAULT_MAX_TOKENS)


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_flowgate_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_node_timeouts() -> dict[str, float]:
    """Per-kind node timeouts in seconds, config values overriding defaults."""
    configured = get_flowgate_config().get("timeouts", {})
    return {**DEFAULT_NODE_TIMEOUTS, **{k: float(v) for k, v in configured.items()}}


def _store_section() -> dict[str, Any]:
    return get_flowgate_config().get("store", {})


def _server_section() -> dict[str, Any]:
    return get_flowgate_config().get("server", {})


def _web_section() -> dict[str, Any]:
    return get_flowgate_config().get("web", {})


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Engine and host configuration loaded from the configuration file."""

    model: str = field(default_factory=get_preferred_model)
    temperature: float = 0.2
    max_tokens: int = field(default_factory=get_max_tokens)
    api_key: str | None = field(default_factory=get_api_key)
    api_base: str | None = None

    node_timeouts: dict[str, float] = field(default_factory=get_node_timeouts)

    store_backend: str = field(default_factory=lambda: _store_section().get("backend", "memory"))
    store_path: Path = field(
        default_factory=lambda: Path(
            _store_section().get("path", "~/.flowgate/store")
        ).expanduser()
    )

    # Bounded progress queue per run invocation
    progress_queue_size: int = field(
        default_factory=lambda: int(get_flowgate_config().get("progress_queue_size", 256))
    )

    server_host: str = field(default_factory=lambda: _server_section().get("host", "127.0.0.1"))
    server_port: int = field(default_factory=lambda: int(_server_section().get("port", 8080)))

    jina_reader_url: str = field(
        default_factory=lambda: _web_section().get("reader_url", "https://r.jina.ai/")
    )
    jina_search_url: str = field(
        default_factory=lambda: _web_section().get("search_url", "https://s.jina.ai/")
    )
    jina_api_key: str | None = field(default_factory=lambda: os.environ.get("JINA_API_KEY"))

    log_level: str = field(
        default_factory=lambda: get_flowgate_config().get("logging", {}).get("level", "INFO")
    )
    log_format: str = field(
        default_factory=lambda: get_flowgate_config().get("logging", {}).get("format", "auto")
    )

    def timeout_for(self, kind: str) -> float | None:
        """Default timeout for a node kind, or None for no limit."""
        return self.node_timeouts.get(kind)
