"""
Cross-platform utilities for App Link.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"

# ---- timing defaults ---------------------------------------------------

# Quiet period before queued changes are flushed.  Windows reports
# write completion in several bursts, so it waits longer.
DEFAULT_QUIET_PERIOD_MS: int = 500 if IS_WINDOWS else 300

# How long a file's size must stay unchanged before an add/change is trusted.
DEFAULT_STABILITY_THRESHOLD_MS: int = 100 if IS_MACOS else 200

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\AppLink``
    - macOS   : ``~/Library/Application Support/AppLink``
    - Linux   : ``$XDG_CONFIG_HOME/AppLink`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / "AppLink"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "app_link.log"


def get_default_link_registry() -> Path:
    """
    Return the directory where ``yarn link`` registers local packages.

    - Windows : ``%LOCALAPPDATA%\\Yarn\\Data\\link``
    - other   : ``~/.config/yarn/link``
    """
    if IS_WINDOWS:
        base = os.environ.get("LOCALAPPDATA", str(Path.home()))
        return Path(base) / "Yarn" / "Data" / "link"
    return Path.home() / ".config" / "yarn" / "link"
