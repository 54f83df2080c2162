"""Catalogue records and crash-safe persistence.

A catalogue is an ordered JSON list of per-domain records. The acquisition
run owns the fetch fields of each record, the tiling run owns ``tile``, and
upstream tooling owns everything else (``url``, ``rank``, ``favicon`` and any
extra columns), which are carried through untouched.
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
import time
import urllib.parse
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Iterator, TextIO

from progress import ProgressReporter


STATUS_DOWNLOADED = "downloaded"
STATUS_NOT_MODIFIED = "not_modified"
STATUS_SKIPPED_RECENT = "skipped_recent"
STATUS_SKIPPED_MAX_RETRIES = "skipped_max_retries"
STATUS_FAILED = "failed"
STATUS_ERROR = "error"

TILE_ELIGIBLE_STATUSES = frozenset({STATUS_DOWNLOADED, STATUS_NOT_MODIFIED, STATUS_SKIPPED_RECENT})

DEFAULT_FAVICON_PATH = "/favicon.ico"
LEGACY_FIELDS = frozenset({"localPath"})

# (attribute, JSON key) for every field the acquisition run writes.
ACQUISITION_FIELDS: tuple[tuple[str, str], ...] = (
    ("favicon_url", "faviconUrl"),
    ("status", "status"),
    ("http_status", "httpStatus"),
    ("error", "error"),
    ("etag", "etag"),
    ("last_modified", "lastModified"),
    ("last_check_time", "lastCheckTime"),
    ("download_time", "downloadTime"),
    ("content_length", "contentLength"),
    ("content_type", "contentType"),
    ("failure_count", "failureCount"),
)
UPSTREAM_KEYS = frozenset({"url", "rank", "favicon"})
KNOWN_KEYS = UPSTREAM_KEYS | {key for _, key in ACQUISITION_FIELDS} | {"tile", "domain"}


class ConfigurationError(RuntimeError):
    """A required input is missing or unusable; the run must not start."""


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix and milliseconds accepted)."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_domain(url: str) -> str:
    """Hostname of ``url`` with a leading ``www.`` removed, or ``""``."""
    try:
        hostname = urllib.parse.urlparse(url or "").hostname
    except ValueError:
        return ""
    if not hostname:
        return ""
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname


def is_supported_remote_url(url: str) -> bool:
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def resolve_favicon_url(page_url: str, favicon: str | None) -> str | None:
    """Join a possibly relative favicon reference against the page URL."""
    if not page_url or not is_supported_remote_url(page_url):
        return None
    reference = (favicon or "").strip() or DEFAULT_FAVICON_PATH
    try:
        resolved = urllib.parse.urljoin(page_url, reference)
    except ValueError:
        return None
    if not is_supported_remote_url(resolved):
        return None
    return resolved


def icon_relative_path(domain: str) -> str:
    """Content-addressed location ``xx/yy/<domain>.png`` under the icons dir."""
    filename = f"{domain}.png"
    digest = hashlib.md5(filename.encode("utf-8")).hexdigest()
    return str(PurePosixPath(digest[0:2], digest[2:4], filename))


def _parse_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_rank(value: Any) -> int | None:
    rank = _parse_optional_int(value)
    if rank is None or rank <= 0:
        return None
    return rank


def _parse_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class TileAssignment:
    file: str
    index: int
    row: int
    col: int

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "index": self.index, "row": self.row, "col": self.col}

    @classmethod
    def from_dict(cls, payload: Any) -> TileAssignment | None:
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                file=str(payload["file"]),
                index=int(payload["index"]),
                row=int(payload["row"]),
                col=int(payload["col"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class CatalogueEntry:
    url: str
    rank: int | None = None
    favicon: str | None = None
    favicon_url: str | None = None
    status: str | None = None
    http_status: int | None = None
    error: str | None = None
    etag: str | None = None
    last_modified: str | None = None
    last_check_time: str | None = None
    download_time: str | None = None
    content_length: int | None = None
    content_type: str | None = None
    # A missing failureCount in a stored record reads as 0.
    failure_count: int = 0
    tile: TileAssignment | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        return get_domain(self.url)

    @property
    def key(self) -> str:
        """Store identity: the domain, or the raw url when it has no host."""
        return self.domain or self.url

    @property
    def icon_path(self) -> str | None:
        domain = self.domain
        if not domain:
            return None
        return icon_relative_path(domain)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CatalogueEntry:
        extra = {
            key: value
            for key, value in payload.items()
            if key not in KNOWN_KEYS and key not in LEGACY_FIELDS
        }
        return cls(
            url=str(payload.get("url") or ""),
            rank=_parse_rank(payload.get("rank")),
            favicon=_parse_optional_str(payload.get("favicon")),
            favicon_url=_parse_optional_str(payload.get("faviconUrl")),
            status=_parse_optional_str(payload.get("status")),
            http_status=_parse_optional_int(payload.get("httpStatus")),
            error=_parse_optional_str(payload.get("error")),
            etag=_parse_optional_str(payload.get("etag")),
            last_modified=_parse_optional_str(payload.get("lastModified")),
            last_check_time=_parse_optional_str(payload.get("lastCheckTime")),
            download_time=_parse_optional_str(payload.get("downloadTime")),
            content_length=_parse_optional_int(payload.get("contentLength")),
            content_type=_parse_optional_str(payload.get("contentType")),
            failure_count=max(0, _parse_optional_int(payload.get("failureCount")) or 0),
            tile=TileAssignment.from_dict(payload.get("tile")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url}
        if self.domain:
            out["domain"] = self.domain
        if self.rank is not None:
            out["rank"] = self.rank
        if self.favicon is not None:
            out["favicon"] = self.favicon
        out.update(self.extra)
        if self.status is not None:
            for attr, key in ACQUISITION_FIELDS:
                out[key] = getattr(self, attr)
        if self.tile is not None:
            out["tile"] = self.tile.to_dict()
        return out


def merge_entry(
    bare: CatalogueEntry,
    prior: CatalogueEntry | None = None,
    fresh: CatalogueEntry | None = None,
) -> CatalogueEntry:
    """Combine the three views of one catalogue record.

    Precedence, field group by field group:

    * ``url``, ``rank``, ``favicon``: always the bare input (upstream owns them).
    * extra columns: prior columns overlaid with the bare input's.
    * acquisition fields: fresh result > prior state > bare input, taken as a
      whole group from the first layer that has been through acquisition.
    * ``tile``: the first non-empty value of fresh > prior > bare.
    """
    layers = [layer for layer in (fresh, prior, bare) if layer is not None]
    acquisition_source = next((layer for layer in layers if layer.status is not None), bare)
    tile = next((layer.tile for layer in layers if layer.tile is not None), None)

    extra: dict[str, Any] = {}
    if prior is not None:
        extra.update(prior.extra)
    extra.update(bare.extra)

    merged = replace(
        acquisition_source,
        url=bare.url,
        rank=bare.rank,
        favicon=bare.favicon,
        tile=tile,
        extra=extra,
    )
    return merged


class EntryStore:
    """Ordered catalogue addressable by domain.

    Both runs write through the store by key instead of mutating records that
    are shared between a filtered view and the full list.
    """

    def __init__(self, entries: Iterable[CatalogueEntry] = ()) -> None:
        self._entries: list[CatalogueEntry] = []
        self._positions: dict[str, int] = {}
        self.duplicates = 0
        for entry in entries:
            self.append(entry)

    def append(self, entry: CatalogueEntry) -> None:
        key = entry.key
        if key in self._positions:
            # Upstream dedups by domain; a repeat keeps its row but is not addressable.
            self.duplicates += 1
        else:
            self._positions[key] = len(self._entries)
        self._entries.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CatalogueEntry]:
        return iter(list(self._entries))

    def __contains__(self, key: object) -> bool:
        return key in self._positions

    def get(self, key: str) -> CatalogueEntry | None:
        position = self._positions.get(key)
        if position is None:
            return None
        return self._entries[position]

    def put(self, entry: CatalogueEntry) -> None:
        position = self._positions.get(entry.key)
        if position is None:
            self.append(entry)
        else:
            self._entries[position] = entry

    def assign_tile(self, key: str, tile: TileAssignment) -> CatalogueEntry:
        current = self.get(key)
        if current is None:
            raise KeyError(key)
        updated = replace(current, tile=tile)
        self.put(updated)
        return updated

    def entries(self) -> list[CatalogueEntry]:
        return list(self._entries)

    def to_records(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]


def atomic_write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_bytes(payload)
    atomic_replace_file(tmp_path, path)


def atomic_replace_file(src: Path, dest: Path) -> None:
    last_error: Exception | None = None
    for attempt in range(8):
        try:
            os.replace(src, dest)
            return
        except PermissionError as exc:
            last_error = exc
            time.sleep(0.05 * (attempt + 1))
    if last_error is not None:
        raise last_error
    os.replace(src, dest)


def atomic_write_json(path: Path, payload: Any) -> None:
    data = json.dumps(payload, indent=2, ensure_ascii=True)
    atomic_write_bytes(path, data.encode("utf-8"))


def _records_to_entries(records: list[Any], path: Path, label: str, stream: TextIO) -> list[CatalogueEntry]:
    entries: list[CatalogueEntry] = []
    dropped = 0
    for record in records:
        if not isinstance(record, dict):
            dropped += 1
            continue
        entries.append(CatalogueEntry.from_dict(record))
    if dropped:
        print(f"{label} warning: ignored {dropped} non-object records in {path}", file=stream)
    return entries


def load_required_entries(path: Path, *, label: str = "[catalogue]", stream: TextIO | None = None) -> list[CatalogueEntry]:
    """Load a catalogue that must exist; anything else is a ConfigurationError."""
    stream = stream or sys.stderr
    if not path.exists():
        raise ConfigurationError(f"input file {path} not found")
    try:
        records = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"input file {path} is unreadable: {exc}") from exc
    if not isinstance(records, list):
        raise ConfigurationError(f"input file {path} must contain a JSON list")
    return _records_to_entries(records, path, label, stream)


def load_entries(path: Path, *, label: str = "[catalogue]", stream: TextIO | None = None) -> list[CatalogueEntry]:
    """Load optional prior state; missing or unreadable state yields ``[]``."""
    stream = stream or sys.stderr
    if not path.exists():
        return []
    try:
        records = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"{label} warning: ignoring unreadable state {path}: {exc}", file=stream)
        return []
    if not isinstance(records, list):
        print(f"{label} warning: ignoring state {path}: not a JSON list", file=stream)
        return []
    return _records_to_entries(records, path, label, stream)


def persist_entries(path: Path, entries: Iterable[CatalogueEntry]) -> int:
    records = [entry.to_dict() for entry in entries]
    atomic_write_json(path, records)
    return len(records)


@dataclass
class CheckpointWriter:
    """Accumulates one run's results and rewrites the full catalogue on flush.

    Every flush writes one record per input entry: this run's fresh result,
    else the prior persisted state, else the bare input (see ``merge_entry``).
    """

    path: Path
    inputs: list[CatalogueEntry]
    prior: EntryStore
    interval: int = 25
    label: str = "[catalogue]"
    stream: TextIO = field(default_factory=lambda: sys.stderr)
    progress: ProgressReporter | None = None

    _fresh: dict[str, CatalogueEntry] = field(default_factory=dict)
    _pending: int = 0
    flushes: int = 0

    @property
    def processed(self) -> int:
        return len(self._fresh)

    def record(self, entry: CatalogueEntry) -> bool:
        """Store a fresh result; returns True when it triggered a checkpoint."""
        self._fresh[entry.key] = entry
        self._pending += 1
        if self.interval > 0 and self._pending >= self.interval:
            self.flush()
            return True
        return False

    def merged(self) -> list[CatalogueEntry]:
        return [
            merge_entry(bare, self.prior.get(bare.key), self._fresh.get(bare.key))
            for bare in self.inputs
        ]

    def flush(self) -> list[CatalogueEntry]:
        merged = self.merged()
        count = persist_entries(self.path, merged)
        self._pending = 0
        self.flushes += 1
        if self.progress is not None:
            self.progress.interrupt()
        print(
            f"{self.label} checkpoint: saved {count} entries (processed {self.processed}) to {self.path}",
            file=self.stream,
        )
        return merged
