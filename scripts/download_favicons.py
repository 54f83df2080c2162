#!/usr/bin/env python3
"""Download and normalize favicons for the ranked catalogue.

Each run walks the top ``--max-requests`` entries in rank order. Entries that
gave up (``failureCount`` at the retry cap) or were checked inside the skip
window are left alone; everything else gets one conditional GET replaying the
stored ETag / Last-Modified validators. New content is decoded (ICO aware),
resized to a square PNG and stored under a hashed two-level directory.

The full catalogue is checkpointed every ``--batch-size`` entries so an
interrupted run loses at most one batch.
"""

from __future__ import annotations

import argparse
import functools
import http.client
import socket
import sys
import urllib.error
import urllib.request
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Mapping, TextIO

from catalogue import (
    STATUS_DOWNLOADED,
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_NOT_MODIFIED,
    STATUS_SKIPPED_MAX_RETRIES,
    STATUS_SKIPPED_RECENT,
    CatalogueEntry,
    CheckpointWriter,
    ConfigurationError,
    EntryStore,
    atomic_write_bytes,
    format_timestamp,
    load_entries,
    load_required_entries,
    merge_entry,
    resolve_favicon_url,
)
from fetch_policy import DECISION_SKIP_EXHAUSTED, DECISION_SKIP_RECENT, decide_fetch
from icon_images import IconDecodeError, decode_icon, encode_png, ensure_pillow, normalize_icon
from progress import ProgressReporter
from script_paths import DOWNLOADED_CATALOGUE_FILE, ICONS_DIR, PROCESSED_CATALOGUE_FILE


LABEL = "[favicons]"
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; FaviconDownloader/1.0)"


class TransientNetworkError(RuntimeError):
    """Timeout or transport failure; retried on a later run."""


@dataclass(frozen=True)
class FetchResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        if value is None:
            return None
        return str(value)


Fetcher = Callable[[str, Mapping[str, str]], FetchResponse]


@dataclass(frozen=True)
class AcquisitionConfig:
    input_path: Path
    output_path: Path
    icons_dir: Path
    max_requests: int = 50000
    batch_size: int = 25
    retry_cap: int = 3
    timeout_seconds: float = 10.0
    target_size: int = 32
    skip_window: timedelta = timedelta(hours=24)
    max_download_bytes: int = 5242880
    user_agent: str = DEFAULT_USER_AGENT
    verbose: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> AcquisitionConfig:
        return cls(
            input_path=Path(args.input).resolve(),
            output_path=Path(args.output).resolve(),
            icons_dir=Path(args.icons_dir).resolve(),
            max_requests=int(args.max_requests),
            batch_size=int(args.batch_size),
            retry_cap=int(args.max_retries),
            timeout_seconds=float(args.timeout_seconds),
            target_size=int(args.target_size),
            skip_window=timedelta(hours=float(args.skip_hours)),
            max_download_bytes=int(args.max_download_bytes),
            user_agent=str(args.user_agent),
            verbose=bool(args.verbose),
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Download favicons for the ranked catalogue with conditional requests and resumable state."
    )
    parser.add_argument(
        "--input",
        default=str(PROCESSED_CATALOGUE_FILE),
        help="Ranked catalogue JSON produced by the dedup/rank join",
    )
    parser.add_argument(
        "--output",
        default=str(DOWNLOADED_CATALOGUE_FILE),
        help="Catalogue state JSON (read as prior state, rewritten at every checkpoint)",
    )
    parser.add_argument("--icons-dir", default=str(ICONS_DIR), help="Root of the hashed icon storage tree")
    parser.add_argument("--max-requests", type=int, default=50000, help="Maximum catalogue entries handled per run")
    parser.add_argument("--batch-size", type=int, default=25, help="Checkpoint the catalogue every N entries")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Consecutive failures after which an entry is skipped for good",
    )
    parser.add_argument("--timeout-seconds", type=float, default=10.0, help="Per-request timeout in seconds")
    parser.add_argument("--target-size", type=int, default=32, help="Stored icon edge length in pixels")
    parser.add_argument(
        "--skip-hours",
        type=float,
        default=24.0,
        help="Do not re-check entries checked within this many hours",
    )
    parser.add_argument(
        "--max-download-bytes",
        type=int,
        default=5242880,
        help="Maximum bytes allowed per icon download (default: 5 MiB)",
    )
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent header")
    parser.add_argument("--verbose", action="store_true", help="Print the outcome of every entry")
    return parser.parse_args(argv)


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.max_requests < 0:
        raise RuntimeError("max requests must be >= 0")
    if args.batch_size <= 0:
        raise RuntimeError("batch size must be positive")
    if args.max_retries <= 0:
        raise RuntimeError("max retries must be positive")
    if args.timeout_seconds <= 0:
        raise RuntimeError("timeout must be positive")
    if args.target_size <= 0:
        raise RuntimeError("target size must be positive")
    if args.skip_hours < 0:
        raise RuntimeError("skip hours must be >= 0")
    if args.max_download_bytes <= 0:
        raise RuntimeError("max download bytes must be positive (default: 5242880)")


def _lower_headers(headers: object) -> dict[str, str]:
    if headers is None:
        return {}
    return {str(key).lower(): str(value) for key, value in headers.items()}


def describe_transport_error(exc: BaseException) -> str:
    if isinstance(exc, urllib.error.URLError):
        reason = getattr(exc, "reason", None)
        if isinstance(reason, (TimeoutError, socket.timeout)):
            return "request timed out"
        return f"connection failed: {reason}"
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return "request timed out"
    return f"{type(exc).__name__}: {exc}"


def fetch_icon(
    url: str,
    headers: Mapping[str, str],
    *,
    timeout_seconds: float,
    max_download_bytes: int,
) -> FetchResponse:
    """One GET with a socket timeout.

    Every HTTP status (including 304) comes back as a response; only
    transport failures raise.
    """
    req = urllib.request.Request(url, headers=dict(headers), method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as response:
            body = response.read(max_download_bytes + 1)
            status = int(getattr(response, "status", 200) or 200)
            response_headers = _lower_headers(response.headers)
    except urllib.error.HTTPError as exc:
        try:
            return FetchResponse(status=int(exc.code), headers=_lower_headers(exc.headers))
        finally:
            exc.close()
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
        raise TransientNetworkError(describe_transport_error(exc)) from exc

    if len(body) > max_download_bytes:
        raise TransientNetworkError(f"download too large (>{max_download_bytes} bytes)")
    return FetchResponse(status=status, headers=response_headers, body=body)


def build_fetcher(config: AcquisitionConfig) -> Fetcher:
    return functools.partial(
        fetch_icon,
        timeout_seconds=config.timeout_seconds,
        max_download_bytes=config.max_download_bytes,
    )


def _parse_content_length(value: str | None, fallback: int) -> int:
    if value is None:
        return fallback
    try:
        return int(value.strip())
    except ValueError:
        return fallback


def _failed(base: CatalogueEntry, *, status: str, error: str, **changes) -> CatalogueEntry:
    return replace(base, status=status, error=error, failure_count=base.failure_count + 1, **changes)


def store_icon(
    response: FetchResponse,
    *,
    favicon_url: str,
    destination: Path,
    target_size: int,
    log: Callable[[str], None],
) -> None:
    image = decode_icon(
        response.body,
        content_type=response.header("content-type"),
        url=favicon_url,
        on_fallback=log,
    )
    normalized = normalize_icon(image, target_size)
    atomic_write_bytes(destination, encode_png(normalized))


def process_entry(
    bare: CatalogueEntry,
    prior: CatalogueEntry | None,
    *,
    config: AcquisitionConfig,
    fetcher: Fetcher,
    now: datetime,
    log: Callable[[str], None],
) -> CatalogueEntry:
    """Compute this run's record for one catalogue entry.

    Never raises for per-entry problems: the outcome is written to
    ``status`` / ``error`` / ``httpStatus`` instead.
    """
    base = merge_entry(bare, prior)
    domain = bare.domain
    favicon_url = resolve_favicon_url(bare.url, bare.favicon)
    if favicon_url is None or not domain:
        return _failed(
            base,
            status=STATUS_ERROR,
            error=f"no resolvable favicon URL for {bare.url!r}",
            favicon_url=None,
            http_status=None,
        )
    base = replace(base, favicon_url=favicon_url)

    decision = decide_fetch(base, now=now, retry_cap=config.retry_cap, skip_window=config.skip_window)
    if decision.action == DECISION_SKIP_EXHAUSTED:
        if config.verbose:
            log(f"skipping {domain}: {decision.reason}")
        return replace(base, status=STATUS_SKIPPED_MAX_RETRIES)
    if decision.action == DECISION_SKIP_RECENT:
        if config.verbose:
            log(f"skipping {domain}: {decision.reason}")
        return replace(base, status=STATUS_SKIPPED_RECENT)

    headers = {"User-Agent": config.user_agent, **decision.headers}
    checked_at = format_timestamp(now)
    try:
        response = fetcher(favicon_url, headers)
    except TransientNetworkError as exc:
        log(f"warning: [rank {bare.rank}] {domain}: {exc}")
        return _failed(base, status=STATUS_ERROR, error=str(exc), http_status=None, last_check_time=checked_at)

    if response.status == 304:
        if config.verbose:
            log(f"[rank {bare.rank}] {domain}: 304 not modified")
        return replace(
            base,
            status=STATUS_NOT_MODIFIED,
            http_status=304,
            error=None,
            failure_count=0,
            last_check_time=checked_at,
            etag=response.header("etag") or base.etag,
            last_modified=response.header("last-modified") or base.last_modified,
        )

    if response.status != 200:
        log(f"warning: [rank {bare.rank}] {domain}: HTTP {response.status}")
        return _failed(
            base,
            status=STATUS_FAILED,
            error=f"HTTP {response.status}",
            http_status=response.status,
            last_check_time=checked_at,
        )

    destination = config.icons_dir / base.icon_path
    try:
        store_icon(
            response,
            favicon_url=favicon_url,
            destination=destination,
            target_size=config.target_size,
            log=lambda message: log(f"warning: {domain}: {message}"),
        )
    except IconDecodeError as exc:
        log(f"warning: [rank {bare.rank}] {domain}: {exc}")
        return _failed(base, status=STATUS_ERROR, error=str(exc), http_status=200, last_check_time=checked_at)

    if config.verbose:
        log(f"[rank {bare.rank}] {domain}: saved {destination}")
    return replace(
        base,
        status=STATUS_DOWNLOADED,
        http_status=200,
        error=None,
        failure_count=0,
        last_check_time=checked_at,
        download_time=checked_at,
        etag=response.header("etag"),
        last_modified=response.header("last-modified"),
        content_length=_parse_content_length(response.header("content-length"), len(response.body)),
        content_type=response.header("content-type"),
    )


def run_acquisition(
    config: AcquisitionConfig,
    *,
    fetcher: Fetcher | None = None,
    clock: Callable[[], datetime] | None = None,
    stream: TextIO | None = None,
) -> list[CatalogueEntry]:
    """One acquisition pass; returns the full catalogue as last persisted."""
    stream = stream or sys.stderr
    fetcher = fetcher or build_fetcher(config)
    clock = clock or (lambda: datetime.now(timezone.utc))

    inputs = load_required_entries(config.input_path, label=LABEL, stream=stream)
    prior = EntryStore(load_entries(config.output_path, label=LABEL, stream=stream))
    if prior.duplicates:
        print(f"{LABEL} warning: prior state has {prior.duplicates} duplicate domains", file=stream)
    config.icons_dir.mkdir(parents=True, exist_ok=True)

    targets = inputs[: config.max_requests]
    print(
        f"{LABEL} processing top {len(targets)} of {len(inputs)} entries ({len(prior)} in prior state)",
        file=stream,
    )

    progress = ProgressReporter(label=f"{LABEL} progress", total=len(targets), unit="entries", stream=stream)
    writer = CheckpointWriter(
        path=config.output_path,
        inputs=inputs,
        prior=prior,
        interval=config.batch_size,
        label=LABEL,
        stream=stream,
        progress=progress,
    )

    def log(message: str) -> None:
        progress.interrupt()
        print(f"{LABEL} {message}", file=stream)

    for bare in targets:
        prior_entry = prior.get(bare.key)
        try:
            result = process_entry(bare, prior_entry, config=config, fetcher=fetcher, now=clock(), log=log)
        except Exception as exc:
            log(f"error: [rank {bare.rank}] {bare.url}: {exc}")
            base = merge_entry(bare, prior_entry)
            result = _failed(base, status=STATUS_ERROR, error=f"{type(exc).__name__}: {exc}")
        writer.record(result)
        progress.step(result.status)

    final = writer.flush()
    progress.close()

    totals = " ".join(f"{key}={value}" for key, value in progress.summary().items())
    print(f"{LABEL} totals: processed={writer.processed} {totals}".rstrip(), file=stream)
    return final


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    ensure_pillow()
    validate_runtime_args(args)
    config = AcquisitionConfig.from_args(args)

    try:
        final = run_acquisition(config)
    except ConfigurationError as exc:
        print(f"{LABEL} error: {exc}", file=sys.stderr)
        return 1

    print(f"{LABEL} wrote {config.output_path} ({len(final)} entries)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
