from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


_DIST_NAME = "pulseboard"
_UNKNOWN = "0.0.0"


def _version_from_pyproject(path: Path) -> str:
    try:
        project = tomllib.loads(path.read_text("utf-8")).get("project") or {}
    except (OSError, tomllib.TOMLDecodeError):
        return _UNKNOWN
    return str(project.get("version") or _UNKNOWN)


def get_version() -> str:
    """Installed distribution version, else the one in the repo's pyproject.toml."""

    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        return _version_from_pyproject(Path(__file__).resolve().parents[2] / "pyproject.toml")


__version__ = get_version()
