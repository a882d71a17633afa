"""Configuration loader for the spiritd daemon.

Loads spiritd.toml, applies environment variable overrides for secrets,
validates required fields, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "SPIRITD_VAULT_SECRET": ("vault", "secret"),
    "SPIRITD_HTTP_TOKEN": ("http", "token"),
}

DEFAULT_BASE_URL = "https://www.free4talk.com"


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from spiritd.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        if not _deep_get(self._data, "agent", "name"):
            errors.append("[agent] name is required")
        if not _deep_get(self._data, "vault", "secret"):
            errors.append("[vault] secret is required (or set SPIRITD_VAULT_SECRET)")
        if not _deep_get(self._data, "models", "primary"):
            errors.append("[models.primary] section is required")
        primary = _deep_get(self._data, "models", "primary", default={})
        if not isinstance(primary, dict):
            primary = {}
        if not primary.get("provider"):
            errors.append("[models.primary] provider is required")
        if not primary.get("model"):
            errors.append("[models.primary] model is required")
        threshold = _deep_get(self._data, "ingest", "failure_threshold", default=5)
        if not isinstance(threshold, int) or threshold < 1:
            errors.append("[ingest] failure_threshold must be a positive integer")
        interval = _deep_get(self._data, "ingest", "poll_interval", default=2.0)
        if not isinstance(interval, (int, float)) or interval <= 0:
            errors.append("[ingest] poll_interval must be greater than zero")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Agent ---

    @property
    def agent_name(self) -> str:
        return self._data["agent"]["name"]

    @property
    def self_names(self) -> tuple[str, ...]:
        """Display names the agent posts under; their messages are never answered."""
        names = _deep_get(self._data, "agent", "self_names", default=None)
        if names is None:
            names = [self.agent_name]
        return tuple(names)

    @property
    def intro_message(self) -> str:
        return _deep_get(self._data, "agent", "intro_message",
                         default="👋 Avatar Spirit Bot is active!")

    # --- Persona ---

    @property
    def workspace(self) -> Path:
        ws = _deep_get(self._data, "persona", "workspace", default="")
        if not ws:
            return self._config_dir
        path = Path(ws).expanduser()
        return path if path.is_absolute() else (self._config_dir / path).resolve()

    @property
    def persona_files(self) -> list[str]:
        return _deep_get(self._data, "persona", "files", default=["persona.md"])

    @property
    def persona_owner(self) -> str:
        return _deep_get(self._data, "persona", "owner", default="")

    @property
    def persona_people(self) -> dict[str, str]:
        return dict(_deep_get(self._data, "persona", "people", default={}))

    # --- Vault ---

    @property
    def vault_secret(self) -> str:
        return self._data["vault"]["secret"]

    @property
    def vault_salt(self) -> str:
        return _deep_get(self._data, "vault", "salt", default="salt")

    # --- Browser ---

    @property
    def base_url(self) -> str:
        return _deep_get(self._data, "browser", "base_url", default=DEFAULT_BASE_URL)

    @property
    def auth_state(self) -> Path:
        return _resolve_path(_deep_get(self._data, "browser", "auth_state",
                                       default="~/.spiritd/auth-state.json"))

    @property
    def headless(self) -> bool:
        return _deep_get(self._data, "browser", "headless", default=True)

    @property
    def navigation_timeout(self) -> float:
        return float(_deep_get(self._data, "browser", "navigation_timeout", default=30.0))

    @property
    def settle_delay(self) -> float:
        return float(_deep_get(self._data, "browser", "settle_delay", default=3.0))

    @property
    def action_timeout(self) -> float:
        return float(_deep_get(self._data, "browser", "action_timeout", default=10.0))

    @property
    def results_settle(self) -> float:
        return float(_deep_get(self._data, "browser", "results_settle", default=2.0))

    # --- Ingestion ---

    @property
    def poll_interval(self) -> float:
        return float(_deep_get(self._data, "ingest", "poll_interval", default=2.0))

    @property
    def failure_threshold(self) -> int:
        return _deep_get(self._data, "ingest", "failure_threshold", default=5)

    # --- Dispatch ---

    @property
    def aliases(self) -> tuple[str, ...]:
        return tuple(_deep_get(self._data, "dispatch", "aliases",
                               default=["avatar", "spirit", "bot"]))

    @property
    def command_sigil(self) -> str:
        return _deep_get(self._data, "dispatch", "sigil", default="!")

    @property
    def action_keywords(self) -> tuple[str, ...]:
        return tuple(_deep_get(self._data, "dispatch", "action_keywords", default=["play"]))

    @property
    def play_exclusions(self) -> tuple[str, ...]:
        return tuple(_deep_get(self._data, "dispatch", "play_exclusions", default=["game"]))

    @property
    def suggest_command(self) -> str:
        return _deep_get(self._data, "dispatch", "suggest_command", default="suggest")

    # --- Reply ---

    @property
    def context_size(self) -> int:
        return _deep_get(self._data, "reply", "context_size", default=15)

    @property
    def max_reply_chars(self) -> int:
        return _deep_get(self._data, "reply", "max_chars", default=120)

    @property
    def send_delay(self) -> float:
        return float(_deep_get(self._data, "reply", "send_delay", default=1.5))

    @property
    def acks(self) -> dict[str, str]:
        return dict(_deep_get(self._data, "reply", "acks", default={}))

    # --- Playback ---

    def playback_timeout(self, step: str, default: float) -> float:
        return float(_deep_get(self._data, "playback", f"{step}_timeout", default=default))

    # --- Models ---

    def model_config(self, name: str) -> dict:
        cfg = _deep_get(self._data, "models", name, default={})
        if not cfg:
            raise ValueError(f"No model config for '{name}'")
        return cfg

    @property
    def suggest_model_config(self) -> dict:
        """Model for suggestions; falls back to the primary model."""
        cfg = _deep_get(self._data, "models", "suggest", default={})
        return cfg or self.model_config("primary")

    @property
    def all_model_names(self) -> list[str]:
        return list(_deep_get(self._data, "models", default={}).keys())

    @property
    def ai_timeout(self) -> float:
        return float(_deep_get(self._data, "behavior", "ai_timeout", default=30.0))

    # --- HTTP API ---

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=3000)

    @property
    def http_auth_token(self) -> str:
        return _deep_get(self._data, "http", "token", default="")

    @property
    def http_max_body_bytes(self) -> int:
        return _deep_get(self._data, "http", "max_body_bytes", default=64 * 1024)

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=30)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    @property
    def http_status_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "status_rate_limit", default=60)

    # --- Behavior ---

    @property
    def shutdown_timeout(self) -> float:
        return float(_deep_get(self._data, "behavior", "shutdown_timeout", default=10.0))

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.spiritd"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.spiritd/spiritd.log"))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    @property
    def pid_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "pid_file",
                                       default="~/.spiritd/spiritd.pid"))


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as spiritd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to spiritd.toml config file.
        overrides: Dict of dotted-key overrides applied to the raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    try:
        with open(p, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
