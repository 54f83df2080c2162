#!/usr/bin/env python3
"""Compose downloaded favicons into rank-ordered sprite tiles.

Eligible entries (fetched successfully, icon on disk, ranked) are sorted by
rank and cut into ``grid_size**2`` chunks; chunk ``n`` becomes
``tile_n.webp`` plus a ``tile_n.json`` sidecar listing its domains in cell
order. Tiles whose membership and icons did not change since they were last
written are left untouched. The run also refreshes the Open Graph preview,
the index page, the ``_headers`` preload hints, a MessagePack layout
document, and writes each entry's tile position back to the catalogue.
"""

from __future__ import annotations

import argparse
import math
import string
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from html import escape
from pathlib import Path
from typing import Callable, TextIO

import msgpack

from catalogue import (
    TILE_ELIGIBLE_STATUSES,
    CatalogueEntry,
    ConfigurationError,
    EntryStore,
    TileAssignment,
    atomic_replace_file,
    atomic_write_bytes,
    atomic_write_json,
    format_timestamp,
    load_required_entries,
    persist_entries,
)
from icon_images import IconDecodeError, Image, ensure_pillow, load_icon_for_tile
from progress import ProgressReporter
from script_paths import DIST_DIR, DOWNLOADED_CATALOGUE_FILE, ICONS_DIR, TILED_CATALOGUE_FILE
from staleness import (
    TILE_EXTENSION,
    ModificationIndex,
    decide_preview_regeneration,
    decide_tile_regeneration,
    find_last_tile_index,
)


LABEL = "[tiles]"
BACKGROUND_COLOR = (255, 255, 255, 0)
PREVIEW_FILENAME = "og_image.webp"
PREVIEW_WIDTH = 1200
PREVIEW_HEIGHT = 630
LAYOUT_FILENAME = "tiles.msgpack"
EMULATED_TILE_ID = "emulated"
DEFAULT_EMULATED_ICONS = 20000


class TileWriteError(RuntimeError):
    """A rendered image could not be saved; other tiles are unaffected."""


@dataclass(frozen=True)
class TileConfig:
    input_path: Path
    output_path: Path
    icons_dir: Path
    dist_dir: Path
    grid_size: int = 10
    icon_size: int = 32
    border_size: int = 2
    force: bool = False
    emulate_icons: int = 0
    eager_tiles: int = 8
    high_priority_tiles: int = 4
    hostname: str = "favoriteiconsofinternet.com"
    tile_quality: int = 80
    preview_quality: int = 20

    @property
    def cell_size(self) -> int:
        return self.icon_size + 2 * self.border_size

    @property
    def image_size(self) -> int:
        return self.grid_size * self.cell_size

    @property
    def chunk_size(self) -> int:
        return self.grid_size * self.grid_size

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> TileConfig:
        return cls(
            input_path=Path(args.input).resolve(),
            output_path=Path(args.output).resolve(),
            icons_dir=Path(args.icons_dir).resolve(),
            dist_dir=Path(args.dist_dir).resolve(),
            grid_size=int(args.grid_size),
            icon_size=int(args.icon_size),
            border_size=int(args.border_size),
            force=bool(args.force),
            emulate_icons=int(args.emulate or 0),
            eager_tiles=int(args.eager_tiles),
            high_priority_tiles=int(args.high_priority_tiles),
            hostname=str(args.hostname),
            tile_quality=int(args.tile_quality),
            preview_quality=int(args.preview_quality),
        )


@dataclass(frozen=True)
class CellGeometry:
    index: int
    row: int
    col: int
    left: int
    top: int


@dataclass(frozen=True)
class TileResult:
    tile_id: int | str
    image_file: str
    sidecar_file: str
    count: int
    regenerated: bool
    reason: str
    failed: bool = False


@dataclass
class TilingResult:
    eligible: int = 0
    tiles: list[TileResult] = field(default_factory=list)
    emulated_references: int = 0
    preview_regenerated: bool = False
    catalogue: list[CatalogueEntry] = field(default_factory=list)

    @property
    def regenerated(self) -> int:
        return sum(1 for tile in self.tiles if tile.regenerated)

    @property
    def failed(self) -> int:
        return sum(1 for tile in self.tiles if tile.failed)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate favicon sprite tiles, sidecars and the index page.")
    parser.add_argument("--input", default=str(DOWNLOADED_CATALOGUE_FILE), help="Catalogue JSON from the download run")
    parser.add_argument("--output", default=str(TILED_CATALOGUE_FILE), help="Catalogue JSON with tile assignments")
    parser.add_argument("--icons-dir", default=str(ICONS_DIR), help="Root of the hashed icon storage tree")
    parser.add_argument("--dist-dir", default=str(DIST_DIR), help="Directory for tiles, sidecars and the index page")
    parser.add_argument("--grid-size", type=int, default=10, help="Icons per tile row/column")
    parser.add_argument("--icon-size", type=int, default=32, help="Icon edge length inside a tile cell")
    parser.add_argument("--border-size", type=int, default=2, help="Transparent border around each icon")
    parser.add_argument("--force", action="store_true", help="Regenerate every tile and the preview")
    parser.add_argument(
        "--emulate",
        type=int,
        nargs="?",
        const=DEFAULT_EMULATED_ICONS,
        default=0,
        help=f"Pad the page with placeholder tiles up to this many icons (default when given: {DEFAULT_EMULATED_ICONS})",
    )
    parser.add_argument("--eager-tiles", type=int, default=8, help="Tiles loaded without loading=lazy")
    parser.add_argument("--high-priority-tiles", type=int, default=4, help="Tiles preloaded with fetchpriority=high")
    parser.add_argument("--hostname", default="favoriteiconsofinternet.com", help="Public hostname for Open Graph tags")
    parser.add_argument("--tile-quality", type=int, default=80, help="WEBP quality for tiles")
    parser.add_argument("--preview-quality", type=int, default=20, help="WEBP quality for the preview image")
    return parser.parse_args(argv)


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.grid_size <= 0 or args.icon_size <= 0:
        raise RuntimeError("grid size and icon size must be positive")
    if args.border_size < 0:
        raise RuntimeError("border size must be >= 0")
    if args.emulate is not None and args.emulate < 0:
        raise RuntimeError("emulated icon count must be >= 0")
    if args.eager_tiles < 0 or args.high_priority_tiles < 0:
        raise RuntimeError("eager/high-priority tile counts must be >= 0")
    for name in ("tile_quality", "preview_quality"):
        value = getattr(args, name)
        if not 1 <= value <= 100:
            raise RuntimeError(f"{name.replace('_', ' ')} must be between 1 and 100")


def tile_image_name(tile_id: int | str) -> str:
    return f"tile_{tile_id}{TILE_EXTENSION}"


def tile_sidecar_name(tile_id: int | str) -> str:
    return f"tile_{tile_id}.json"


def cell_geometry(position: int, *, columns: int, icon_size: int, border_size: int) -> CellGeometry:
    """Pixel placement of the ``position``-th icon in a grid of ``columns``."""
    cell_size = icon_size + 2 * border_size
    row, col = divmod(position, columns)
    return CellGeometry(
        index=position,
        row=row,
        col=col,
        left=col * cell_size + border_size,
        top=row * cell_size + border_size,
    )


def select_eligible(store: EntryStore, mtime_index: ModificationIndex) -> list[CatalogueEntry]:
    """Ranked entries with a usable icon on disk, ascending by rank.

    Entries lacking ``lastCheckTime`` / ``downloadTime`` get them from the
    icon's modification time (written back through the store).
    """
    eligible: list[CatalogueEntry] = []
    for entry in store:
        if entry.status not in TILE_ELIGIBLE_STATUSES or entry.rank is None:
            continue
        if store.get(entry.key) is not entry:
            continue
        icon_path = entry.icon_path
        mtime = mtime_index.mtime(icon_path) if icon_path else None
        if mtime is None:
            continue
        if not entry.last_check_time or not entry.download_time:
            stamp = format_timestamp(datetime.fromtimestamp(mtime, timezone.utc))
            entry = replace(
                entry,
                last_check_time=entry.last_check_time or stamp,
                download_time=entry.download_time or stamp,
            )
            store.put(entry)
        eligible.append(entry)
    eligible.sort(key=lambda item: item.rank)
    return eligible


def chunk_entries(entries: list[CatalogueEntry], chunk_size: int) -> list[list[CatalogueEntry]]:
    return [entries[start : start + chunk_size] for start in range(0, len(entries), chunk_size)]


def render_grid(
    entries: list[CatalogueEntry],
    *,
    columns: int,
    width: int,
    height: int,
    config: TileConfig,
    log: Callable[[str], None],
) -> Image.Image:
    canvas = Image.new("RGBA", (width, height), BACKGROUND_COLOR)
    for position, entry in enumerate(entries):
        geometry = cell_geometry(position, columns=columns, icon_size=config.icon_size, border_size=config.border_size)
        try:
            icon = load_icon_for_tile(config.icons_dir / entry.icon_path, config.icon_size)
        except IconDecodeError as exc:
            log(f"warning: skipped compositing {entry.domain}: {exc}")
            continue
        canvas.paste(icon, (geometry.left, geometry.top))
    return canvas


def save_webp(image: Image.Image, path: Path, *, quality: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        image.save(tmp_path, format="WEBP", quality=quality, method=6)
        atomic_replace_file(tmp_path, path)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise TileWriteError(f"failed to write {path.name}: {exc}") from exc


def generate_tile(
    chunk: list[CatalogueEntry],
    tile_id: int | str,
    *,
    config: TileConfig,
    mtime_index: ModificationIndex,
    last_tile_index: int,
    log: Callable[[str], None],
) -> TileResult:
    image_name = tile_image_name(tile_id)
    sidecar_name = tile_sidecar_name(tile_id)
    tile_path = config.dist_dir / image_name
    sidecar_path = config.dist_dir / sidecar_name
    domains = [entry.domain for entry in chunk]

    decision = decide_tile_regeneration(
        tile_path=tile_path,
        sidecar_path=sidecar_path,
        domains=domains,
        icon_paths=[entry.icon_path for entry in chunk],
        mtime_index=mtime_index,
        force=config.force,
        last_produced=isinstance(tile_id, int) and tile_id == last_tile_index,
    )

    if decision.regenerate:
        log(f"tile #{tile_id} ({len(chunk)} icons): regenerating, {decision.reason}")
        image = render_grid(
            chunk,
            columns=config.grid_size,
            width=config.image_size,
            height=config.image_size,
            config=config,
            log=log,
        )
        try:
            save_webp(image, tile_path, quality=config.tile_quality)
        except TileWriteError as exc:
            # The old sidecar stays, so the next run still sees this tile as stale.
            log(f"error: tile #{tile_id}: {exc}")
            return TileResult(
                tile_id=tile_id,
                image_file=image_name,
                sidecar_file=sidecar_name,
                count=len(chunk),
                regenerated=False,
                reason=str(exc),
                failed=True,
            )
        # Sidecar only after the image is in place.
        atomic_write_json(sidecar_path, domains)
    elif decision.rewrite_sidecar or not sidecar_path.exists():
        atomic_write_json(sidecar_path, domains)

    return TileResult(
        tile_id=tile_id,
        image_file=image_name,
        sidecar_file=sidecar_name,
        count=len(chunk),
        regenerated=decision.regenerate,
        reason=decision.reason,
    )


def preview_capacity(cell_size: int) -> tuple[int, int]:
    """Columns and rows needed to cover the preview canvas."""
    return math.ceil(PREVIEW_WIDTH / cell_size), math.ceil(PREVIEW_HEIGHT / cell_size)


def generate_preview(
    eligible: list[CatalogueEntry],
    *,
    config: TileConfig,
    mtime_index: ModificationIndex,
    log: Callable[[str], None],
) -> bool:
    columns, rows = preview_capacity(config.cell_size)
    top_entries = eligible[: columns * rows]
    preview_path = config.dist_dir / PREVIEW_FILENAME

    decision = decide_preview_regeneration(
        preview_path=preview_path,
        icon_paths=[entry.icon_path for entry in top_entries],
        mtime_index=mtime_index,
        force=config.force,
    )
    if not decision.regenerate:
        log(f"preview: up to date ({len(top_entries)} icons)")
        return False

    log(f"preview: regenerating, {decision.reason}")
    image = render_grid(
        top_entries,
        columns=columns,
        width=PREVIEW_WIDTH,
        height=PREVIEW_HEIGHT,
        config=config,
        log=log,
    )
    try:
        save_webp(image, preview_path, quality=config.preview_quality)
    except TileWriteError as exc:
        log(f"error: preview: {exc}")
        return False
    return True


def emulated_tile_count(total_icons: int, chunk_size: int, real_tiles: int) -> int:
    """Placeholder references needed to pad the page to ``total_icons``."""
    if total_icons <= 0 or chunk_size <= 0:
        return 0
    missing = total_icons - real_tiles * chunk_size
    if missing <= 0:
        return 0
    return -(-missing // chunk_size)


INDEX_TEMPLATE = string.Template(
    """<!DOCTYPE html>
<html>
  <head>
    <title>Favorite Icons of Internet</title>
    <meta property="og:title" content="Favorite Icons of Internet" />
    <meta property="og:url" content="https://$hostname" />
    <meta property="og:description" content="Favorite icons map of internet" />
    <meta property="og:type" content="website" />
    <meta property="og:image" content="https://$hostname/$preview" />
    <meta property="og:image:width" content="$preview_width" />
    <meta property="og:image:height" content="$preview_height" />
    <base target="_blank" />
    <meta name="color-scheme" content="light dark">
    <style>
      * { box-sizing: border-box; }
      body { margin: 0; padding: 0; background-color: Field; }
      .tiles-wrapper {
        font-size: 0;
        line-height: 0;
        display: inline-block;
        width: round(up, 100vw, ${image_size}px);
      }
      img { border: 0; display: inline-block; margin: 0; padding: 0; vertical-align: top; }
    </style>
    <script>
      var GRID_SIZE = $grid_size;
      var ICON_SIZE = $icon_size;
      var BORDER_SIZE = $border_size;

      function loadMap(img, tileIndex, sidecarId) {
        if (img.dataset.mapLoaded) return;
        img.dataset.mapLoaded = "true";
        var cellSize = ICON_SIZE + BORDER_SIZE * 2;

        fetch("tile_" + (sidecarId || tileIndex) + ".json")
          .then(function (res) { return res.json(); })
          .then(function (domains) {
            var map = document.createElement("map");
            map.name = "map_" + tileIndex;
            domains.forEach(function (domain, index) {
              var col = index % GRID_SIZE;
              var row = Math.floor(index / GRID_SIZE);
              var left = col * cellSize + BORDER_SIZE;
              var top = row * cellSize + BORDER_SIZE;
              var area = document.createElement("area");
              area.shape = "rect";
              area.coords = left + "," + top + "," + (left + ICON_SIZE) + "," + (top + ICON_SIZE);
              area.href = "https://" + domain;
              area.title = domain;
              map.appendChild(area);
            });
            img.after(map);
          })
          .catch(function (err) {
            console.error("Failed to load map for tile " + tileIndex, err);
            delete img.dataset.mapLoaded;
          });
      }
    </script>
  </head>
  <body>
    <div class="tiles-wrapper">
$images
    </div>
  </body>
</html>
"""
)


def render_image_tag(position: int, image_file: str, sidecar_id: int | str | None, *, config: TileConfig) -> str:
    attrs = [
        f'src="{image_file}"',
        f'usemap="#map_{position}"',
        f'width="{config.image_size}"',
        f'height="{config.image_size}"',
    ]
    if position > config.eager_tiles or sidecar_id is not None:
        attrs.append('loading="lazy"')
    if position <= config.high_priority_tiles and sidecar_id is None:
        attrs.append('fetchpriority="high"')
    loader = f"loadMap(this, {position})" if sidecar_id is None else f"loadMap(this, {position}, '{sidecar_id}')"
    attrs.append(f'onload="{loader}"')
    return f"      <img {' '.join(attrs)}>"


def render_index_html(tiles: list[TileResult], emulated_references: int, *, config: TileConfig) -> str:
    tags = [render_image_tag(int(tile.tile_id), tile.image_file, None, config=config) for tile in tiles]
    for offset in range(emulated_references):
        tags.append(
            render_image_tag(
                len(tiles) + offset + 1,
                tile_image_name(EMULATED_TILE_ID),
                EMULATED_TILE_ID,
                config=config,
            )
        )
    return INDEX_TEMPLATE.substitute(
        hostname=escape(config.hostname),
        preview=PREVIEW_FILENAME,
        preview_width=PREVIEW_WIDTH,
        preview_height=PREVIEW_HEIGHT,
        image_size=config.image_size,
        grid_size=config.grid_size,
        icon_size=config.icon_size,
        border_size=config.border_size,
        images="\n".join(tags),
    )


def render_headers_file(tiles: list[TileResult], *, config: TileConfig) -> str:
    lines = ["/"]
    for tile in tiles[: config.high_priority_tiles]:
        lines.append(f"  Link: </{tile.image_file}>; rel=preload; as=image; fetchpriority=high")
    return "\n".join(lines) + "\n"


def build_layout(result: TilingResult, *, config: TileConfig) -> dict:
    tiles = [
        {
            "index": tile.tile_id,
            "image": tile.image_file,
            "sidecar": tile.sidecar_file,
            "count": tile.count,
        }
        for tile in result.tiles
    ]
    emulated = None
    if result.emulated_references:
        emulated = {
            "image": tile_image_name(EMULATED_TILE_ID),
            "sidecar": tile_sidecar_name(EMULATED_TILE_ID),
            "references": result.emulated_references,
        }
    return {
        "grid_size": config.grid_size,
        "icon_size": config.icon_size,
        "border_size": config.border_size,
        "cell_size": config.cell_size,
        "image_size": config.image_size,
        "eligible": result.eligible,
        "tiles": tiles,
        "emulated": emulated,
        "preview": {"image": PREVIEW_FILENAME, "width": PREVIEW_WIDTH, "height": PREVIEW_HEIGHT},
    }


def run_tiling(config: TileConfig, *, stream: TextIO | None = None) -> TilingResult:
    stream = stream or sys.stderr
    entries = load_required_entries(config.input_path, label=LABEL, stream=stream)
    config.dist_dir.mkdir(parents=True, exist_ok=True)
    mtime_index = ModificationIndex.build(config.icons_dir)
    store = EntryStore(entries)
    eligible = select_eligible(store, mtime_index)
    chunks = chunk_entries(eligible, config.chunk_size)
    print(
        f"{LABEL} {len(eligible)} of {len(store)} entries eligible, {len(chunks)} tiles, "
        f"{len(mtime_index)} icons indexed",
        file=stream,
    )

    last_tile_index = find_last_tile_index(config.dist_dir)
    if last_tile_index > 0:
        print(f"{LABEL} last existing tile #{last_tile_index} will be regenerated", file=stream)

    progress = ProgressReporter(label=f"{LABEL} progress", total=len(chunks), unit="tiles", stream=stream, non_tty_every=50)

    def log(message: str) -> None:
        progress.interrupt()
        print(f"{LABEL} {message}", file=stream)

    result = TilingResult(eligible=len(eligible))
    result.preview_regenerated = generate_preview(eligible, config=config, mtime_index=mtime_index, log=log)

    for offset, chunk in enumerate(chunks):
        tile_id = offset + 1
        tile = generate_tile(
            chunk,
            tile_id,
            config=config,
            mtime_index=mtime_index,
            last_tile_index=last_tile_index,
            log=log,
        )
        for position, entry in enumerate(chunk):
            geometry = cell_geometry(
                position,
                columns=config.grid_size,
                icon_size=config.icon_size,
                border_size=config.border_size,
            )
            store.assign_tile(
                entry.key,
                TileAssignment(file=tile.image_file, index=position, row=geometry.row, col=geometry.col),
            )
        result.tiles.append(tile)
        if tile.failed:
            progress.step("failed")
        else:
            progress.step("regenerated" if tile.regenerated else "unchanged")
    progress.close()

    if config.emulate_icons and eligible:
        placeholder_chunk = [eligible[0]] * config.chunk_size
        generate_tile(
            placeholder_chunk,
            EMULATED_TILE_ID,
            config=config,
            mtime_index=mtime_index,
            last_tile_index=last_tile_index,
            log=log,
        )
        result.emulated_references = emulated_tile_count(config.emulate_icons, config.chunk_size, len(chunks))
        log(f"emulating {result.emulated_references} additional tiles")

    index_path = config.dist_dir / "index.html"
    atomic_write_bytes(index_path, render_index_html(result.tiles, result.emulated_references, config=config).encode("utf-8"))
    atomic_write_bytes(config.dist_dir / "_headers", render_headers_file(result.tiles, config=config).encode("utf-8"))
    atomic_write_bytes(
        config.dist_dir / LAYOUT_FILENAME,
        msgpack.packb(build_layout(result, config=config), use_bin_type=True),
    )

    result.catalogue = store.entries()
    count = persist_entries(config.output_path, result.catalogue)
    print(
        f"{LABEL} totals: tiles={len(result.tiles)} regenerated={result.regenerated} failed={result.failed} "
        f"preview={'regenerated' if result.preview_regenerated else 'unchanged'} "
        f"emulated={result.emulated_references}",
        file=stream,
    )
    print(f"{LABEL} saved {count} entries to {config.output_path}", file=stream)
    return result


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    ensure_pillow()
    validate_runtime_args(args)
    config = TileConfig.from_args(args)

    try:
        result = run_tiling(config)
    except ConfigurationError as exc:
        print(f"{LABEL} error: {exc}", file=sys.stderr)
        return 1

    print(f"{LABEL} wrote {len(result.tiles)} tiles to {config.dist_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
