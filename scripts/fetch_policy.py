from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from catalogue import CatalogueEntry, parse_timestamp


DECISION_FETCH = "fetch"
DECISION_SKIP_RECENT = "skip_recent"
DECISION_SKIP_EXHAUSTED = "skip_exhausted"


@dataclass(frozen=True)
class FetchDecision:
    action: str
    headers: dict[str, str] = field(default_factory=dict)
    reason: str = ""

    @property
    def should_fetch(self) -> bool:
        return self.action == DECISION_FETCH


def conditional_headers(entry: CatalogueEntry | None) -> dict[str, str]:
    """If-None-Match / If-Modified-Since built from stored validators."""
    headers: dict[str, str] = {}
    if entry is None:
        return headers
    if entry.etag:
        headers["If-None-Match"] = entry.etag
    if entry.last_modified:
        headers["If-Modified-Since"] = entry.last_modified
    return headers


def decide_fetch(
    entry: CatalogueEntry | None,
    *,
    now: datetime,
    retry_cap: int,
    skip_window: timedelta,
) -> FetchDecision:
    """Decide whether an entry is fetched this run.

    Exhaustion is checked before recency so an entry that has given up is
    never reported as merely recently checked.
    """
    if entry is None:
        return FetchDecision(DECISION_FETCH)

    if entry.failure_count >= retry_cap:
        return FetchDecision(
            DECISION_SKIP_EXHAUSTED,
            reason=f"exceeded max retries ({entry.failure_count})",
        )

    last_check = parse_timestamp(entry.last_check_time)
    if last_check is not None and now - last_check < skip_window:
        hours = skip_window.total_seconds() / 3600.0
        return FetchDecision(
            DECISION_SKIP_RECENT,
            reason=f"checked within last {hours:.1f}h ({entry.last_check_time})",
        )

    return FetchDecision(DECISION_FETCH, headers=conditional_headers(entry))
