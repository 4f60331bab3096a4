"""Utility helpers for the watch order tracker."""

from __future__ import annotations

import re
import time
import unicodedata


EPISODE_PREFIX = "tv:"
MOVIE_PREFIX = "movie:"
SERIES_PREFIX = "series:"
WATCH_KEY_PREFIXES = (MOVIE_PREFIX, SERIES_PREFIX, EPISODE_PREFIX)


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def movie_key(slug: str) -> str:
    return f"{MOVIE_PREFIX}{slug}"


def series_key(slug: str) -> str:
    return f"{SERIES_PREFIX}{slug}"


def episode_prefix(tmdb_id: int) -> str:
    """Return the key prefix shared by every episode of a series."""

    return f"{EPISODE_PREFIX}{tmdb_id}:"


def episode_key(tmdb_id: int, season: int, episode: int) -> str:
    return f"{EPISODE_PREFIX}{tmdb_id}:S{season}:E{episode}"


def coerce_number(value: object, *, default: float | None = 0) -> float | None:
    """Return ``value`` as a finite number or ``default`` when it cannot be parsed."""

    if isinstance(value, bool):
        return default
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if number != number or number in (float("inf"), float("-inf")):
        return default
    return number


def now_millis() -> int:
    """Return the current time as epoch milliseconds."""

    return int(time.time() * 1000)
