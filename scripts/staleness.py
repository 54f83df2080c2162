"""Decide whether a rendered tile or preview must be rebuilt.

Freshness is judged by file modification times: an artifact is stale when any
icon feeding it was written after the artifact itself. Tiles additionally
compare their sidecar's domain list against the freshly computed chunk.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


TILE_EXTENSION = ".webp"
TILE_FILE_RE = re.compile(r"^tile_(\d+)\.webp$")


class ModificationIndex:
    """Icon storage path -> modification time, snapshotted once per run.

    Keys are POSIX paths relative to the icon root (``ab/cd/example.com.png``).
    """

    def __init__(self, mtimes: dict[str, float] | None = None) -> None:
        self._mtimes = dict(mtimes or {})

    @classmethod
    def build(cls, root: Path) -> ModificationIndex:
        mtimes: dict[str, float] = {}
        if not root.is_dir():
            return cls(mtimes)
        for dirpath, _, filenames in os.walk(root):
            base = Path(dirpath)
            for name in filenames:
                if name.endswith(".tmp"):
                    continue
                path = base / name
                try:
                    mtimes[path.relative_to(root).as_posix()] = path.stat().st_mtime
                except FileNotFoundError:
                    continue
        return cls(mtimes)

    def __len__(self) -> int:
        return len(self._mtimes)

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._mtimes

    def mtime(self, relative_path: str) -> float | None:
        return self._mtimes.get(relative_path)

    def newer_than(self, relative_paths: Iterable[str], reference: float) -> str | None:
        """First path whose mtime is strictly after ``reference``, if any."""
        for relative_path in relative_paths:
            mtime = self._mtimes.get(relative_path)
            if mtime is not None and mtime > reference:
                return relative_path
        return None


@dataclass(frozen=True)
class StalenessDecision:
    regenerate: bool
    reason: str
    rewrite_sidecar: bool = False


def _artifact_mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


def find_last_tile_index(dist_dir: Path) -> int:
    """Highest numbered tile image already on disk, 0 when there is none."""
    if not dist_dir.is_dir():
        return 0
    indices = []
    for child in dist_dir.iterdir():
        match = TILE_FILE_RE.match(child.name)
        if match:
            indices.append(int(match.group(1)))
    return max(indices, default=0)


def read_sidecar(path: Path) -> list[str] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, list):
        return None
    return [str(item) for item in payload]


def decide_tile_regeneration(
    *,
    tile_path: Path,
    sidecar_path: Path,
    domains: list[str],
    icon_paths: list[str],
    mtime_index: ModificationIndex,
    force: bool = False,
    last_produced: bool = False,
) -> StalenessDecision:
    if force:
        return StalenessDecision(True, "forced", rewrite_sidecar=True)
    if last_produced:
        # The previous run may have stopped while writing this one.
        return StalenessDecision(True, "last tile of previous run", rewrite_sidecar=True)

    tile_mtime = _artifact_mtime(tile_path)
    if tile_mtime is None:
        return StalenessDecision(True, "image missing", rewrite_sidecar=True)

    recorded = read_sidecar(sidecar_path)
    if recorded is None:
        return StalenessDecision(True, "sidecar missing or invalid", rewrite_sidecar=True)
    if recorded != domains:
        return StalenessDecision(True, "domains changed", rewrite_sidecar=True)

    newer = mtime_index.newer_than(icon_paths, tile_mtime)
    if newer is not None:
        return StalenessDecision(True, f"icon {newer} is newer", rewrite_sidecar=True)

    return StalenessDecision(False, "up to date")


def decide_preview_regeneration(
    *,
    preview_path: Path,
    icon_paths: list[str],
    mtime_index: ModificationIndex,
    force: bool = False,
) -> StalenessDecision:
    if force:
        return StalenessDecision(True, "forced")
    preview_mtime = _artifact_mtime(preview_path)
    if preview_mtime is None:
        return StalenessDecision(True, "image missing")
    newer = mtime_index.newer_than(icon_paths, preview_mtime)
    if newer is not None:
        return StalenessDecision(True, f"icon {newer} is newer")
    return StalenessDecision(False, "up to date")
