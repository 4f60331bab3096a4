"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.models import (  # noqa: E402
    Episode,
    MediaKind,
    MovieDetails,
    ResolvedTitle,
    Season,
    SeriesListing,
)
from app.storage import KeyValueStorage, MemoryStorage, StateStore  # noqa: E402
from app.tracker import WatchTracker  # noqa: E402
from app.watch_order import CatalogEntry, series_slugs  # noqa: E402

FIXED_NOW = 1_700_000_000_000

SAMPLE_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry(id="a", title="Film A", year=2000, type="movie", runtime_estimate=100),
    CatalogEntry(id="b", title="Show B", year=2001, type="series", runtime_estimate=400),
)


def build_listing(
    external_id: int = 42,
    *,
    seasons: int = 2,
    episodes_per_season: int = 2,
    episode_runtime: int = 50,
) -> SeriesListing:
    """Return a series listing with a uniform season/episode grid."""

    return SeriesListing(
        external_id=external_id,
        name=f"Series {external_id}",
        rating=8.1,
        total_runtime_minutes=seasons * episodes_per_season * episode_runtime,
        seasons=[
            Season(
                season_number=season,
                season_runtime_minutes=episodes_per_season * episode_runtime,
                episodes=[
                    Episode(
                        episode_number=number,
                        name=f"S{season}E{number}",
                        runtime_minutes=episode_runtime,
                    )
                    for number in range(1, episodes_per_season + 1)
                ],
            )
            for season in range(1, seasons + 1)
        ],
    )


class FakeMetadataClient:
    """In-memory stand-in for the TMDB client."""

    def __init__(
        self,
        *,
        ids: dict[str, int] | None = None,
        listings: dict[int, SeriesListing] | None = None,
        movies: dict[int, MovieDetails] | None = None,
    ) -> None:
        self.ids = ids or {"Film A": 7, "Show B": 42}
        self.listings = listings or {42: build_listing(42)}
        self.movies = movies or {
            7: MovieDetails(external_id=7, name="Film A", runtime_minutes=120, rating=7.4)
        }
        self.resolve_calls: list[tuple[str, MediaKind, int | None]] = []
        self.series_calls: list[int] = []

    async def resolve(
        self, title: str, *, media_kind: MediaKind, year: int | None = None
    ) -> ResolvedTitle:
        self.resolve_calls.append((title, media_kind, year))
        return ResolvedTitle(
            external_id=self.ids[title],
            canonical_name=title,
            media_kind=media_kind,
            year=year,
        )

    async def fetch_series(self, external_id: int) -> SeriesListing:
        self.series_calls.append(external_id)
        return self.listings[external_id]

    async def fetch_movie(self, external_id: int) -> MovieDetails:
        return self.movies[external_id]


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def metadata_client() -> FakeMetadataClient:
    return FakeMetadataClient()


@pytest.fixture
def make_tracker(
    metadata_client: FakeMetadataClient,
) -> Callable[..., WatchTracker]:
    """Return a factory building trackers over the two-title sample catalog."""

    def factory(
        backend: KeyValueStorage | None = None,
        *,
        client: object | None = metadata_client,
    ) -> WatchTracker:
        store = StateStore(
            backend if backend is not None else MemoryStorage(),
            series_slugs=series_slugs(SAMPLE_CATALOG),
        )
        return WatchTracker(
            store,
            SAMPLE_CATALOG,
            client,  # type: ignore[arg-type]
            clock=lambda: FIXED_NOW,
        )

    return factory
