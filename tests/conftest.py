import json
import sys
from pathlib import Path

import pytest

# Ensure repository root is on sys.path so `import app_link` works locally
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app_link.config import Config  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without threads or I/O waits")
    config.addinivalue_line("markers", "integration: tests using real watchdog observers")


@pytest.fixture
def config(tmp_path):
    """A Config stored under tmp_path, with no yarn links and a long quiet period."""
    cfg = Config(tmp_path / "config" / "config.json")
    cfg.builder_url = "http://builder.test"
    cfg.link_registry = str(tmp_path / "no-registry")
    cfg.quiet_period = 60
    cfg.stability_threshold = 0
    return cfg


@pytest.fixture
def app_root(tmp_path):
    """A minimal app: manifest plus one source file."""
    root = tmp_path / "app"
    root.mkdir()
    (root / "manifest.json").write_text(
        json.dumps({"vendor": "acme", "name": "store", "version": "1.2.0", "builders": {"react": "3.x"}}),
        encoding="utf-8",
    )
    (root / "react").mkdir()
    (root / "react" / "a.js").write_text("export default 1\n", encoding="utf-8")
    return root
