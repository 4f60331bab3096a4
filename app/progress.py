"""Read-only progress aggregates derived from the tracker state and catalog.

Every function here is total: missing metadata contributes nothing rather than
raising, so progress only ever improves as TMDB data arrives.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from .models import CanonicalState, valid_runtime
from .utils import WATCH_KEY_PREFIXES, movie_key, series_key
from .watch_order import CatalogEntry

MILLIS_PER_DAY = 24 * 60 * 60 * 1000


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


@dataclass(slots=True)
class RuntimeProgress:
    """Minutes watched against the total known runtime of the catalog."""

    total_minutes: int
    watched_minutes: int

    @property
    def percent(self) -> int:
        return time_percent(self.watched_minutes, self.total_minutes)

    def to_payload(self) -> dict[str, object]:
        return {
            "totalMinutes": self.total_minutes,
            "watchedMinutes": self.watched_minutes,
            "percent": self.percent,
            "text": runtime_text(self.watched_minutes, self.total_minutes),
        }


def item_contribution(entry: CatalogEntry, state: CanonicalState) -> float:
    """Return how much of one catalog entry is complete, between 0 and 1."""

    if not entry.is_series:
        return 1.0 if state.is_watched(movie_key(entry.id)) else 0.0
    if state.is_watched(series_key(entry.id)):
        return 1.0
    meta = state.series_meta.get(entry.id)
    if meta is not None and meta.total_episodes > 0:
        return min(meta.checked_episodes / meta.total_episodes, 1.0)
    return 0.0


def title_percent(state: CanonicalState, catalog: Sequence[CatalogEntry]) -> float:
    """Title-weighted completion percentage, rounded to two decimals."""

    if not catalog:
        return 0.0
    contributions = sum(item_contribution(entry, state) for entry in catalog)
    percent = _round_half_up(contributions / len(catalog) * 100, 2)
    return min(max(percent, 0.0), 100.0)


def _movie_runtime(entry: CatalogEntry, state: CanonicalState) -> float:
    meta = state.movie_meta.get(entry.id)
    runtime = valid_runtime(meta.runtime_minutes) if meta is not None else None
    if runtime is None:
        runtime = valid_runtime(entry.runtime_estimate)
    return runtime or 0.0


def _series_runtime(entry: CatalogEntry, state: CanonicalState) -> float:
    meta = state.series_meta.get(entry.id)
    runtime = valid_runtime(meta.total_runtime_minutes) if meta is not None else None
    if runtime is None:
        runtime = valid_runtime(entry.runtime_estimate)
    return runtime or 0.0


def runtime_progress(
    state: CanonicalState, catalog: Iterable[CatalogEntry]
) -> RuntimeProgress:
    """Runtime-weighted progress.

    Partially watched series are interpolated with an average episode length
    (``checked * runtime / total``) rather than the exact runtimes of the
    watched episodes.
    """

    total = 0.0
    watched = 0.0
    for entry in catalog:
        if not entry.is_series:
            runtime = _movie_runtime(entry, state)
            total += runtime
            if runtime > 0 and state.is_watched(movie_key(entry.id)):
                watched += runtime
            continue

        runtime = _series_runtime(entry, state)
        total += runtime
        if runtime <= 0:
            continue
        if state.is_watched(series_key(entry.id)):
            watched += runtime
            continue
        meta = state.series_meta.get(entry.id)
        if meta is not None and meta.total_episodes > 0:
            checked = min(meta.checked_episodes, meta.total_episodes)
            watched += checked * runtime / meta.total_episodes

    return RuntimeProgress(
        total_minutes=int(_round_half_up(total)),
        watched_minutes=int(_round_half_up(watched)),
    )


def is_complete(entry: CatalogEntry, state: CanonicalState) -> bool:
    if not entry.is_series:
        return state.is_watched(movie_key(entry.id))
    if state.is_watched(series_key(entry.id)):
        return True
    meta = state.series_meta.get(entry.id)
    return (
        meta is not None
        and meta.total_episodes > 0
        and meta.checked_episodes >= meta.total_episodes
    )


def remaining_count(state: CanonicalState, catalog: Iterable[CatalogEntry]) -> int:
    return sum(1 for entry in catalog if not is_complete(entry, state))


def filter_entries(
    state: CanonicalState,
    catalog: Iterable[CatalogEntry],
    *,
    query: str = "",
    remaining_only: bool = False,
) -> list[CatalogEntry]:
    """Return catalog entries matching a title search and remaining filter."""

    needle = query.strip().casefold()
    matches: list[CatalogEntry] = []
    for entry in catalog:
        if needle and needle not in entry.title.casefold():
            continue
        if remaining_only and is_complete(entry, state):
            continue
        matches.append(entry)
    return matches


def next_up(
    state: CanonicalState, catalog: Iterable[CatalogEntry]
) -> CatalogEntry | None:
    """Return the first entry, in watch order, that is not yet complete."""

    for entry in catalog:
        if not is_complete(entry, state):
            return entry
    return None


def watched_count(state: CanonicalState) -> int:
    return sum(1 for key in state.watched if key.startswith(WATCH_KEY_PREFIXES))


def series_percent(entry: CatalogEntry, state: CanonicalState) -> int | None:
    """Whole-number episode completion for a resolved series, if known."""

    meta = state.series_meta.get(entry.id)
    if not entry.is_series or meta is None or meta.total_episodes <= 0:
        return None
    return int(_round_half_up(meta.checked_episodes / meta.total_episodes * 100))


def time_percent(watched_minutes: float, total_minutes: float) -> int:
    if total_minutes <= 0:
        return 0
    return int(_round_half_up(watched_minutes / total_minutes * 100))


def format_runtime(minutes: float | None) -> str:
    """Format minutes as ``"2h 15m"``, ``"2h"`` or ``"45m"``."""

    if not minutes or minutes <= 0:
        return ""
    minutes = int(_round_half_up(minutes))
    if minutes < 60:
        return f"{minutes}m"
    hours, remainder = divmod(minutes, 60)
    if remainder == 0:
        return f"{hours}h"
    return f"{hours}h {remainder}m"


def runtime_text(watched_minutes: float, total_minutes: float) -> str:
    watched = format_runtime(watched_minutes)
    total = format_runtime(total_minutes)
    if not watched and not total:
        return ""
    if not total:
        return f"{watched} watched"
    if not watched:
        return f"0m / {total}"
    return f"{watched} / {total}"


def format_rating(rating: float | None) -> str:
    if not rating or rating <= 0:
        return ""
    return f"{rating:.1f}"


def star_rating(rating: float | None) -> int:
    """Number of filled stars out of five for a 0-10 rating."""

    if not rating or rating <= 0:
        return 0
    return int(_round_half_up(rating / 10 * 5))


def rating_tier(rating: float | None) -> str:
    if not rating or rating <= 0:
        return "none"
    if rating >= 8:
        return "excellent"
    if rating >= 7:
        return "good"
    if rating >= 6:
        return "decent"
    return "poor"


def is_stale(fetched_at: int | None, *, now_ms: int, stale_after_days: int = 30) -> bool:
    """Whether cached metadata fetched at ``fetched_at`` (epoch ms) is too old."""

    if not fetched_at:
        return False
    return fetched_at < now_ms - stale_after_days * MILLIS_PER_DAY
