"""Configuration loader for relayd.

Loads relayd.toml, applies environment variable overrides for secrets,
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


# Environment variable overrides for secrets and per-host identities
_ENV_OVERRIDES = {
    "RELAYD_LLM_KEY": ("api_keys", "llm"),
    "RELAYD_SIGNAL_ACCOUNT": ("signal", "account"),
    "RELAYD_ADMIN": ("bot", "admin"),
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful, efficient and concise AI assistant."


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str, base: Path) -> Path:
    path = Path(p).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


class Config:
    """Immutable configuration loaded from relayd.toml."""

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
        if not _deep_get(self._data, "bot", "default_model"):
            errors.append("[bot] default_model is required")
        if not _deep_get(self._data, "llm", "base_url"):
            errors.append("[llm] base_url is required")
        if not self.whatsapp_enabled and not self.signal_enabled:
            errors.append("at least one of [whatsapp] or [signal] must be enabled")
        if self.whatsapp_enabled and not self.whatsapp_url:
            errors.append("[whatsapp] url is required")
        if self.signal_enabled and not self.signal_account:
            errors.append("[signal] account is required (or set RELAYD_SIGNAL_ACCOUNT)")
        if self.backoff_initial <= 0 or self.backoff_max < self.backoff_initial:
            errors.append("[supervisor] backoff_initial must be > 0 and <= backoff_max")
        if self.memory_max_messages < 1:
            errors.append("[memory] max_messages must be >= 1")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Bot ---

    @property
    def bot_name(self) -> str:
        return _deep_get(self._data, "bot", "name", default="relayd")

    @property
    def default_model(self) -> str:
        return self._data["bot"]["default_model"]

    @property
    def system_prompt(self) -> str:
        return _deep_get(self._data, "bot", "system_prompt", default=DEFAULT_SYSTEM_PROMPT)

    @property
    def admin(self) -> str:
        """Admin identity fragment, matched as a substring of sender ids."""
        return str(_deep_get(self._data, "bot", "admin", default=""))

    @property
    def admin_name(self) -> str:
        return _deep_get(self._data, "bot", "admin_name", default="the admin")

    @property
    def restart_notice(self) -> str:
        return _deep_get(self._data, "bot", "restart_notice",
                         default=f"Restarting {self.bot_name} services...")

    @property
    def restart_delay(self) -> float:
        return float(_deep_get(self._data, "bot", "restart_delay", default=3.0))

    # --- LLM ---

    @property
    def llm_config(self) -> dict:
        return _deep_get(self._data, "llm", default={})

    @property
    def llm_api_key(self) -> str:
        return _deep_get(self._data, "api_keys", "llm", default="")

    @property
    def query_timeout(self) -> float:
        return float(_deep_get(self._data, "llm", "query_timeout", default=35.0))

    @property
    def free_marker(self) -> str:
        return _deep_get(self._data, "llm", "free_marker", default=":free")

    @property
    def always_models(self) -> list[str]:
        return _deep_get(self._data, "llm", "always_models", default=["kilo/auto"])

    @property
    def max_models(self) -> int:
        return _deep_get(self._data, "llm", "max_models", default=10)

    @property
    def fallback_models(self) -> list[str]:
        return _deep_get(self._data, "llm", "fallback_models", default=[
            "kilo/auto", "minimax/minimax-m2.5:free", "z-ai/glm-5:free",
        ])

    # --- WhatsApp ---

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(_deep_get(self._data, "whatsapp", "enabled", default=False))

    @property
    def whatsapp_url(self) -> str:
        return _deep_get(self._data, "whatsapp", "url", default="")

    @property
    def whatsapp_send_timeout(self) -> float:
        return float(_deep_get(self._data, "whatsapp", "send_timeout", default=10.0))

    @property
    def whatsapp_dedup_size(self) -> int:
        return _deep_get(self._data, "whatsapp", "dedup_size", default=100)

    @property
    def whatsapp_heartbeat(self) -> float:
        return float(_deep_get(self._data, "whatsapp", "heartbeat", default=30.0))

    @property
    def whatsapp_watchdog(self) -> bool:
        return bool(_deep_get(self._data, "whatsapp", "watchdog", default=True))

    # --- Signal ---

    @property
    def signal_enabled(self) -> bool:
        return bool(_deep_get(self._data, "signal", "enabled", default=False))

    @property
    def signal_account(self) -> str:
        return _deep_get(self._data, "signal", "account", default="")

    @property
    def signal_host(self) -> str:
        return _deep_get(self._data, "signal", "host", default="127.0.0.1")

    @property
    def signal_port(self) -> int:
        return _deep_get(self._data, "signal", "port", default=7583)

    @property
    def signal_socket_path(self) -> str:
        p = _deep_get(self._data, "signal", "socket_path", default="")
        return str(Path(p).expanduser()) if p else ""

    @property
    def signal_request_timeout(self) -> float:
        return float(_deep_get(self._data, "signal", "request_timeout", default=10.0))

    @property
    def signal_max_pending(self) -> int:
        return _deep_get(self._data, "signal", "max_pending", default=50)

    @property
    def signal_reconnect_delay(self) -> float:
        return float(_deep_get(self._data, "signal", "reconnect_delay", default=5.0))

    @property
    def signal_watchdog(self) -> bool:
        return bool(_deep_get(self._data, "signal", "watchdog", default=False))

    # --- Supervisor ---

    @property
    def backoff_initial(self) -> float:
        return float(_deep_get(self._data, "supervisor", "backoff_initial", default=5.0))

    @property
    def backoff_max(self) -> float:
        return float(_deep_get(self._data, "supervisor", "backoff_max", default=60.0))

    @property
    def monitor_interval(self) -> float:
        return float(_deep_get(self._data, "supervisor", "monitor_interval", default=120.0))

    @property
    def dead_check_limit(self) -> int:
        return _deep_get(self._data, "supervisor", "dead_check_limit", default=5)

    @property
    def watchdog_interval(self) -> float:
        return float(_deep_get(self._data, "supervisor", "watchdog_interval", default=300.0))

    @property
    def watchdog_grace(self) -> float:
        return float(_deep_get(self._data, "supervisor", "watchdog_grace", default=180.0))

    @property
    def never_open_limit(self) -> float:
        return float(_deep_get(self._data, "supervisor", "never_open_limit", default=300.0))

    @property
    def inactivity_limit(self) -> float:
        return float(_deep_get(self._data, "supervisor", "inactivity_limit", default=900.0))

    # --- Memory ---

    @property
    def memory_file(self) -> Path:
        return _resolve_path(
            _deep_get(self._data, "memory", "file", default="data/memory.json"),
            self._config_dir,
        )

    @property
    def memory_max_messages(self) -> int:
        return _deep_get(self._data, "memory", "max_messages", default=50)

    @property
    def memory_max_age(self) -> float:
        hours = _deep_get(self._data, "memory", "max_age_hours", default=48)
        return float(hours) * 3600

    @property
    def memory_flush_interval(self) -> float:
        return float(_deep_get(self._data, "memory", "flush_interval", default=300.0))

    # --- HTTP ---

    @property
    def http_enabled(self) -> bool:
        return bool(_deep_get(self._data, "http", "enabled", default=True))

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="0.0.0.0")  # noqa: S104 — health endpoint for container probes

    @property
    def http_port(self) -> int:
        return int(os.environ.get("PORT") or _deep_get(self._data, "http", "port", default=3000))

    # --- Logging ---

    @property
    def log_file(self) -> Path:
        return _resolve_path(
            _deep_get(self._data, "logging", "file", default="logs/relayd.log"),
            self._config_dir,
        )

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as relayd.toml if it exists."""
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
        path: Path to relayd.toml config file.
        overrides: Dict of dotted-key overrides applied to raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    with open(p, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    # Apply overrides before validation
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
