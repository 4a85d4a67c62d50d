"""
Foreground runner for App Link.

Sets up logging, builds the link session for a project and keeps it
running until SIGINT/SIGTERM or a fatal session error.
"""

import logging
import logging.handlers
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from app_link import __app_name__, __version__
from app_link.builder import BuilderClient
from app_link.config import Config, get_log_path
from app_link.manifest import Manifest, ensure_linkable, load_manifest
from app_link.session import WatchSession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Config, verbose: bool = False, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    level = logging.DEBUG if verbose else getattr(
        logging, config.log_level.upper(), logging.INFO
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT)

    # Rotating file handler
    max_bytes = config.max_log_size_mb * 1024 * 1024
    fh = logging.handlers.RotatingFileHandler(
        str(log_path or get_log_path()),
        maxBytes=max_bytes,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    # urllib3 logs every pooled connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


def build_session(
    root: Path, config: Config, debugger: Callable[[Manifest], Any] | None = None
) -> WatchSession:
    """Load the project's manifest and build a session for it.

    *debugger* is called with the manifest after the first successful build
    and may return a port to announce.  The CLI opens no debugger tunnel,
    so it passes none.
    """
    config.require_configured()
    manifest = load_manifest(root)
    ensure_linkable(manifest)
    client = BuilderClient(
        config.builder_url,
        token=config.auth_token,
        timeout=config.request_timeout,
    )
    return WatchSession(root, manifest, client, config, debugger=debugger)


def run_foreground(session: WatchSession, clean: bool = False) -> int:
    """Run *session* until SIGINT/SIGTERM.  Returns the process exit code."""
    logger.info("%s %s starting.", __app_name__, __version__)
    if clean:
        session.clean()

    def _handler(sig, frame):
        # Release the watcher and the event stream before exiting
        session.stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    session.start()
    print(f"{__app_name__} running (press Ctrl-C to stop)")
    while not session.wait(timeout=1.0):
        pass
    session.stop()

    if session.error is not None:
        raise session.error
    logger.info("Your app is still in development mode.")
    logger.info("Run the link command again to resume syncing %s.", session.app_id)
    return 0
