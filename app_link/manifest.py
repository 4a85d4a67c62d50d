"""App manifest loading.

The manifest names the app and lists the builders it uses; the link
command uses it to build the app locator and to refuse apps whose builders
only support the legacy link flow.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from app_link.errors import CommandError, ManifestError

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"

# Builders that still rely on the legacy link flow
LEGACY_BUILDERS = ("render", "functions-ts")
BUILDER_HUB = "builder-hub"


@dataclass
class Manifest:
    """The fields of ``manifest.json`` App Link cares about."""
    vendor: str
    name: str
    version: str
    builders: dict[str, str] = field(default_factory=dict)
    dependencies: dict[str, str] = field(default_factory=dict)

    @property
    def app_id(self) -> str:
        """Return the app locator, ``vendor.name@version``."""
        return f"{self.vendor}.{self.name}@{self.version}"

    @property
    def subject(self) -> str:
        """Return the event subject, ``vendor.name``."""
        return self.app_id.split("@")[0]

    def requires_legacy_link(self) -> bool:
        if self.name == BUILDER_HUB:
            return True
        return any(self.builders.get(b) for b in LEGACY_BUILDERS)


def parse_manifest(data: dict[str, Any]) -> Manifest:
    """Validate a decoded manifest and return a :class:`Manifest`."""
    missing = [k for k in ("vendor", "name", "version") if not data.get(k)]
    if missing:
        raise ManifestError(f"Manifest is missing: {', '.join(missing)}")
    builders = data.get("builders") or {}
    if not isinstance(builders, dict):
        raise ManifestError("Manifest 'builders' must be an object")
    return Manifest(
        vendor=str(data["vendor"]),
        name=str(data["name"]),
        version=str(data["version"]),
        builders={str(k): str(v) for k, v in builders.items()},
        dependencies=dict(data.get("dependencies") or {}),
    )


def load_manifest(root: Path) -> Manifest:
    """Load ``manifest.json`` from the project *root*."""
    path = root / MANIFEST_FILE
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ManifestError(f"No {MANIFEST_FILE} found in {root}") from exc
    except (json.JSONDecodeError, OSError) as exc:
        raise ManifestError(f"Could not read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError(f"{path} must contain a JSON object")
    manifest = parse_manifest(data)
    logger.debug("Loaded manifest for %s", manifest.app_id)
    return manifest


def ensure_linkable(manifest: Manifest) -> None:
    """Raise :class:`CommandError` for apps that need the legacy link flow."""
    if manifest.requires_legacy_link():
        raise CommandError(
            f"{manifest.app_id} uses builders that only support legacy linking, "
            "which App Link does not provide."
        )
