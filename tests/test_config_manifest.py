import json

import pytest

from app_link.config import DEFAULT_CONFIG, PROJECT_SETTINGS_FILE, Config, load_project_settings
from app_link.errors import CommandError, ConfigError, ManifestError
from app_link.manifest import ensure_linkable, load_manifest, parse_manifest


@pytest.mark.unit
def test_config_created_with_defaults(tmp_path):
    path = tmp_path / "cfg" / "config.json"

    cfg = Config(path)

    assert path.exists()
    assert json.loads(path.read_text()) == DEFAULT_CONFIG
    assert not cfg.is_configured()
    with pytest.raises(ConfigError):
        cfg.require_configured()


@pytest.mark.unit
def test_config_merges_stored_values(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"builder_url": "https://b.test/", "quiet_period_ms": 750}))

    cfg = Config(path)

    assert cfg.builder_url == "https://b.test"
    assert cfg.events_url == "https://b.test"
    assert cfg.quiet_period == 0.75
    assert cfg.sticky_hosts == 3
    cfg.require_configured()


@pytest.mark.unit
def test_config_setters_clamp_and_persist(tmp_path):
    path = tmp_path / "config.json"
    cfg = Config(path)
    cfg.quiet_period = 0
    cfg.request_timeout = 0
    cfg.ignore_patterns = [" *.log ", "", "dist/"]
    cfg.link_registry = "~/links"
    cfg.save()

    again = Config(path)
    assert again.quiet_period == 0.01
    assert again.request_timeout == 1.0
    assert again.ignore_patterns == ["*.log", "dist/"]
    assert again.link_registry.name == "links"
    assert "~" not in str(again.link_registry)


@pytest.mark.unit
def test_corrupt_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    assert Config(path).builder_url == ""


@pytest.mark.unit
def test_project_settings(tmp_path):
    assert load_project_settings(tmp_path) == {}

    (tmp_path / PROJECT_SETTINGS_FILE).write_text('{"links": {"a.b": "../b"}}')
    assert load_project_settings(tmp_path) == {"links": {"a.b": "../b"}}

    (tmp_path / PROJECT_SETTINGS_FILE).write_text("[]")
    with pytest.raises(ConfigError):
        load_project_settings(tmp_path)

    (tmp_path / PROJECT_SETTINGS_FILE).write_text("{oops")
    with pytest.raises(ConfigError):
        load_project_settings(tmp_path)


@pytest.mark.unit
def test_manifest_locator(app_root):
    manifest = load_manifest(app_root)

    assert manifest.app_id == "acme.store@1.2.0"
    assert manifest.subject == "acme.store"
    ensure_linkable(manifest)


@pytest.mark.unit
def test_manifest_errors(tmp_path):
    with pytest.raises(ManifestError):
        load_manifest(tmp_path)
    with pytest.raises(ManifestError, match="version"):
        parse_manifest({"vendor": "acme", "name": "store"})
    with pytest.raises(ManifestError):
        parse_manifest({"vendor": "acme", "name": "store", "version": "1.0.0", "builders": []})


@pytest.mark.unit
@pytest.mark.parametrize(
    "data",
    [
        {"vendor": "acme", "name": "store", "version": "1.0.0", "builders": {"render": "0.x"}},
        {"vendor": "acme", "name": "store", "version": "1.0.0", "builders": {"functions-ts": "1.x"}},
        {"vendor": "vtex", "name": "builder-hub", "version": "1.0.0"},
    ],
)
def test_legacy_apps_are_refused(data):
    with pytest.raises(CommandError):
        ensure_linkable(parse_manifest(data))
