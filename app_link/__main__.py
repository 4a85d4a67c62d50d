"""Entry point for App Link.

Usage:
    python -m app_link                 Link the app in the current directory
    python -m app_link --root DIR      Link the app in DIR
    python -m app_link --clean         Clean the builder cache before linking
"""

import argparse
import logging
import sys
from pathlib import Path

from app_link import __version__
from app_link.config import Config
from app_link.errors import LinkError

logger = logging.getLogger("app_link")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="app-link",
        description="Sync a local app with the remote builder and watch for changes.",
    )
    parser.add_argument("--root", default=".", help="App directory (default: cwd)")
    parser.add_argument(
        "-c", "--clean", action="store_true", help="Clean the builder cache first"
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--reconnect",
        action="store_true",
        help="Reopen the build event stream when it drops",
    )
    parser.add_argument("--config", default=None, help="Path to an alternate config.json")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, then link and watch until interrupted."""
    from app_link.service import build_session, run_foreground, setup_logging

    args = _parse_args(argv)
    config = Config(Path(args.config) if args.config else None)
    if args.reconnect:
        config.reconnect_events = True
    setup_logging(config, verbose=args.verbose)

    try:
        session = build_session(Path(args.root), config)
        code = run_foreground(session, clean=args.clean)
    except (LinkError, OSError) as exc:
        logger.error("%s", exc)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
