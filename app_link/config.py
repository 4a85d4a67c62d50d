"""Configuration management for App Link.

User settings (builder endpoints, token, timings, logging) live in a JSON
config file in the platform-appropriate application data directory.
Per-project settings (declared local links) live in ``.applink.json`` at
the project root.
"""

import json
import logging
from pathlib import Path
from typing import Any

from app_link.errors import ConfigError
from app_link.platform_utils import (
    DEFAULT_QUIET_PERIOD_MS,
    DEFAULT_STABILITY_THRESHOLD_MS,
    get_default_link_registry,
)
from app_link.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from app_link.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

PROJECT_SETTINGS_FILE = ".applink.json"

DEFAULT_CONFIG: dict[str, Any] = {
    # ---- remote service ----
    "builder_url": "",
    "events_url": "",  # blank = same host as builder_url
    "auth_token": "",
    "request_timeout_seconds": 60,
    # ---- sticky routing ----
    "sticky_hosts": 3,  # number of hints probed before each initial link
    "availability_timeout_seconds": 1.0,
    # ---- watching ----
    "quiet_period_ms": DEFAULT_QUIET_PERIOD_MS,
    "stability_threshold_ms": DEFAULT_STABILITY_THRESHOLD_MS,
    "ignore_patterns": [],  # extra glob patterns (e.g. ["*.log", "coverage/"])
    "link_registry": "",  # blank = yarn's default link directory
    # ---- event stream ----
    "reconnect_events": False,
    # ---- logging ----
    "log_level": "INFO",
    "max_log_size_mb": 10,
    "log_backup_count": 3,
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                # Merge stored values over defaults so new keys get defaults
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.debug("Configuration loaded from %s", self._path)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.debug("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- remote service ----

    @property
    def builder_url(self) -> str:
        """Return the base URL of the remote build service."""
        return str(self._data.get("builder_url", "")).rstrip("/")

    @builder_url.setter
    def builder_url(self, value: str) -> None:
        self._data["builder_url"] = value.strip()

    @property
    def events_url(self) -> str:
        """Return the base URL of the event stream (defaults to the builder)."""
        return str(self._data.get("events_url") or self.builder_url).rstrip("/")

    @events_url.setter
    def events_url(self, value: str) -> None:
        self._data["events_url"] = value.strip()

    @property
    def auth_token(self) -> str:
        return self._data.get("auth_token", "")

    @auth_token.setter
    def auth_token(self, value: str) -> None:
        self._data["auth_token"] = value.strip()

    @property
    def request_timeout(self) -> float:
        """Return the request timeout in seconds."""
        return float(self._data.get("request_timeout_seconds", 60))

    @request_timeout.setter
    def request_timeout(self, value: float) -> None:
        """Set the request timeout (minimum 1 s)."""
        self._data["request_timeout_seconds"] = max(1.0, float(value))

    # ---- sticky routing ----

    @property
    def sticky_hosts(self) -> int:
        """Return how many sticky hints are probed before an initial link."""
        return int(self._data.get("sticky_hosts", 3))

    @sticky_hosts.setter
    def sticky_hosts(self, value: int) -> None:
        self._data["sticky_hosts"] = max(1, int(value))

    @property
    def availability_timeout(self) -> float:
        return float(self._data.get("availability_timeout_seconds", 1.0))

    @availability_timeout.setter
    def availability_timeout(self, value: float) -> None:
        self._data["availability_timeout_seconds"] = max(0.1, float(value))

    # ---- watching ----

    @property
    def quiet_period(self) -> float:
        """Return the debounce quiet period in seconds."""
        return int(self._data.get("quiet_period_ms", DEFAULT_QUIET_PERIOD_MS)) / 1000

    @quiet_period.setter
    def quiet_period(self, seconds: float) -> None:
        """Set the debounce quiet period (minimum 10 ms)."""
        self._data["quiet_period_ms"] = max(10, int(seconds * 1000))

    @property
    def stability_threshold(self) -> float:
        """Return the write-stability threshold in seconds."""
        ms = self._data.get("stability_threshold_ms", DEFAULT_STABILITY_THRESHOLD_MS)
        return int(ms) / 1000

    @stability_threshold.setter
    def stability_threshold(self, seconds: float) -> None:
        self._data["stability_threshold_ms"] = max(0, int(seconds * 1000))

    @property
    def ignore_patterns(self) -> list[str]:
        """Return extra glob patterns used to skip files."""
        return self._data.get("ignore_patterns", [])

    @ignore_patterns.setter
    def ignore_patterns(self, value: list[str]) -> None:
        self._data["ignore_patterns"] = [p.strip() for p in value if p.strip()]

    @property
    def link_registry(self) -> Path:
        """Return the directory holding ``yarn link`` registrations."""
        raw = self._data.get("link_registry", "")
        return Path(raw).expanduser() if raw else get_default_link_registry()

    @link_registry.setter
    def link_registry(self, value: str) -> None:
        self._data["link_registry"] = value.strip()

    # ---- event stream ----

    @property
    def reconnect_events(self) -> bool:
        """Return whether a dropped event stream is reopened."""
        return bool(self._data.get("reconnect_events", False))

    @reconnect_events.setter
    def reconnect_events(self, value: bool) -> None:
        self._data["reconnect_events"] = value

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._data["log_level"] = value

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        self._data["log_backup_count"] = max(0, int(value))

    # ---- convenience ----

    def is_configured(self) -> bool:
        """Return True when the builder endpoint is set."""
        return bool(self.builder_url)

    def require_configured(self) -> None:
        """Raise :class:`ConfigError` unless the builder endpoint is set."""
        if not self.is_configured():
            raise ConfigError(
                f"No builder_url configured. Edit {self._path} and set it."
            )


def load_project_settings(root: Path) -> dict[str, Any]:
    """Read ``.applink.json`` from *root*; an absent file means no settings."""
    path = root / PROJECT_SETTINGS_FILE
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data
