"""Migration of the legacy flat watch record into the structured document.

The first schema generation stored everything in one ``key -> bool`` map.
Completion flags for films and series shared the ``movie:`` namespace, and
TMDB metadata was packed into colon-delimited positional keys:

* ``movie-meta:<slug>:<tmdbId>:<runtime>:<rating>:<timestamp>``
* ``series-meta:<slug>:<tmdbId>:<total>:<checked>:<timestamp>``
* ``series-meta:<slug>:<tmdbId>:<total>:<checked>:<runtime>:<timestamp>``

Nothing outside this module understands those encodings.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Mapping

from .models import CanonicalState, MovieMeta, SeriesMeta
from .utils import (
    EPISODE_PREFIX,
    MOVIE_PREFIX,
    SERIES_PREFIX,
    coerce_number,
    movie_key,
    series_key,
)

logger = logging.getLogger(__name__)

MOVIE_META_PREFIX = "movie-meta:"
SERIES_META_PREFIX = "series-meta:"


def _int_field(parts: list[str], index: int) -> int:
    if index >= len(parts):
        return 0
    return int(coerce_number(parts[index], default=0) or 0)


def _parse_movie_meta(key: str) -> tuple[str, MovieMeta] | None:
    parts = key.split(":")
    slug = parts[1] if len(parts) > 1 else ""
    if not slug:
        return None
    if len(parts) >= 6:
        runtime, rating, fetched_at = (
            _int_field(parts, 3),
            coerce_number(parts[4], default=0) or 0.0,
            _int_field(parts, 5),
        )
    else:
        runtime, rating, fetched_at = _int_field(parts, 3), 0.0, _int_field(parts, 4)
    meta = MovieMeta(
        external_id=_int_field(parts, 2),
        runtime_minutes=runtime,
        rating=rating,
        fetched_at=fetched_at,
    )
    return slug, meta


def _parse_series_meta(key: str) -> tuple[str, SeriesMeta] | None:
    parts = key.split(":")
    slug = parts[1] if len(parts) > 1 else ""
    if not slug:
        return None
    if len(parts) >= 7:
        runtime, fetched_at = _int_field(parts, 5), _int_field(parts, 6)
    else:
        runtime, fetched_at = 0, _int_field(parts, 5)
    meta = SeriesMeta(
        external_id=_int_field(parts, 2),
        total_episodes=max(_int_field(parts, 3), 0),
        checked_episodes=max(_int_field(parts, 4), 0),
        total_runtime_minutes=runtime,
        fetched_at=fetched_at,
    )
    return slug, meta


def migrate_legacy(
    record: Mapping[str, object], series_slugs: Collection[str]
) -> CanonicalState:
    """Convert a legacy flat record into a :class:`CanonicalState`.

    ``series_slugs`` names every catalog entry that is a series; legacy
    ``movie:<slug>`` flags for those slugs become ``series:<slug>``. The result
    depends only on the inputs, so repeated runs produce identical output.
    """

    watched: dict[str, bool] = {}
    movie_meta: dict[str, MovieMeta] = {}
    series_meta: dict[str, SeriesMeta] = {}
    skipped = 0

    for key in sorted(record):
        if record[key] is not True:
            continue
        if key.startswith(EPISODE_PREFIX):
            watched[key] = True
        elif key.startswith(MOVIE_PREFIX):
            slug = key[len(MOVIE_PREFIX):]
            if slug in series_slugs:
                watched[series_key(slug)] = True
            else:
                watched[movie_key(slug)] = True
        elif key.startswith(SERIES_PREFIX):
            watched[key] = True
        elif key.startswith(MOVIE_META_PREFIX):
            parsed_movie = _parse_movie_meta(key)
            if parsed_movie is None:
                skipped += 1
                continue
            slug, meta = parsed_movie
            current = movie_meta.get(slug)
            if current is None or meta.fetched_at >= current.fetched_at:
                movie_meta[slug] = meta
        elif key.startswith(SERIES_META_PREFIX):
            parsed_series = _parse_series_meta(key)
            if parsed_series is None:
                skipped += 1
                continue
            slug, meta = parsed_series
            current_series = series_meta.get(slug)
            if current_series is None or meta.fetched_at >= current_series.fetched_at:
                series_meta[slug] = meta
        else:
            skipped += 1

    if skipped:
        logger.debug("Ignored %s unrecognised legacy keys during migration", skipped)

    return CanonicalState(
        watched=watched, movie_meta=movie_meta, series_meta=series_meta
    )
