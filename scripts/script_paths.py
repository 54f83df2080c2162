from __future__ import annotations

from pathlib import Path


SCRIPTS_DIR = Path(__file__).resolve().parent


def _resolve_project_dir() -> Path:
    """Prefer current working directory when invoked from the project root."""
    cwd = Path.cwd().resolve()
    if (cwd / "scripts").is_dir() and (cwd / "data").is_dir():
        return cwd
    return SCRIPTS_DIR.parent


PROJECT_DIR = _resolve_project_dir()

WORK_DATA_DIR = PROJECT_DIR / "data"
ICONS_DIR = WORK_DATA_DIR / "icons"
DIST_DIR = PROJECT_DIR / "dist"

PROCESSED_CATALOGUE_FILE = WORK_DATA_DIR / "favicons-processed.json"
DOWNLOADED_CATALOGUE_FILE = WORK_DATA_DIR / "favicons-downloaded.json"
TILED_CATALOGUE_FILE = WORK_DATA_DIR / "favicons-tiled.json"
