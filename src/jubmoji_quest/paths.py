from __future__ import annotations

"""Locations of the goal catalog and of the engine's local state."""

import os
from pathlib import Path


def configured_catalog_dir() -> Path | None:
    configured = os.environ.get("JUBMOJI_CATALOG_DIR", "").strip()
    if not configured:
        return None
    return Path(configured).expanduser().resolve()


def discover_repo_root(start: Path | None = None) -> Path:
    """Directory holding `catalog/`, or the parent of `JUBMOJI_CATALOG_DIR` when that is set."""

    catalog_dir = configured_catalog_dir()
    if catalog_dir is not None:
        if not (catalog_dir / "goals").is_dir():
            raise FileNotFoundError(f"JUBMOJI_CATALOG_DIR has no goals directory: {catalog_dir}")
        return catalog_dir.parent
    start_path = (start or Path.cwd()).resolve()
    for candidate in (start_path, *start_path.parents):
        if (candidate / "catalog" / "goals").is_dir():
            return candidate
    raise FileNotFoundError("Could not find a directory containing catalog/goals.")


def jubmoji_home() -> Path:
    configured = os.environ.get("JUBMOJI_HOME", "").strip()
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".jubmoji"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    dirs = {"base": base, "state": base / "state", "telemetry": base / "telemetry"}
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    return dirs
