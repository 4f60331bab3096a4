"""Tracker session coordinating the reducer, durable storage and TMDB lookups."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Iterable, Protocol

from .models import (
    CanonicalState,
    MediaKind,
    MovieDetails,
    MovieMeta,
    ResolvedTitle,
    SeriesListing,
    SeriesMeta,
)
from .progress import (
    filter_entries,
    format_rating,
    format_runtime,
    is_complete,
    is_stale,
    next_up,
    rating_tier,
    remaining_count,
    runtime_progress,
    series_percent,
    star_rating,
    title_percent,
    watched_count,
)
from .reducer import (
    Action,
    BulkSetEpisodes,
    Hydrate,
    Reset,
    SetWatched,
    ToggleWatched,
    UpdateMovieMeta,
    UpdateSeriesMeta,
    reduce,
)
from .services.tmdb import MetadataNotConfiguredError
from .storage import StateStore
from .utils import episode_key, episode_prefix, movie_key, now_millis, series_key
from .watch_order import WATCH_ORDER, CatalogEntry, MediaType, index_catalog

logger = logging.getLogger(__name__)


class MetadataClient(Protocol):
    async def resolve(
        self, title: str, *, media_kind: MediaKind, year: int | None = None
    ) -> ResolvedTitle: ...

    async def fetch_series(self, external_id: int) -> SeriesListing: ...

    async def fetch_movie(self, external_id: int) -> MovieDetails: ...


class TrackerError(RuntimeError):
    """Base class for tracker operations that cannot be applied."""

    error_code = "tracker_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"error": self.error_code, "message": self.message}


class UnknownTitleError(TrackerError):
    error_code = "unknown_title"
    status_code = 404


class UnknownEpisodeError(TrackerError):
    error_code = "unknown_episode"
    status_code = 404


class SeriesNotResolvedError(TrackerError):
    error_code = "series_not_resolved"
    status_code = 409


class ResolutionInProgressError(TrackerError):
    error_code = "resolution_in_progress"
    status_code = 409


def _rating_payload(rating: float | None) -> dict[str, Any]:
    return {
        "ratingText": format_rating(rating),
        "stars": star_rating(rating),
        "ratingTier": rating_tier(rating),
    }


class WatchTracker:
    """Owns the in-memory state for one tracker and persists every change."""

    def __init__(
        self,
        store: StateStore,
        catalog: Iterable[CatalogEntry] = WATCH_ORDER,
        metadata_client: MetadataClient | None = None,
        *,
        undo_limit: int = 50,
        stale_after_days: int = 30,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self._store = store
        self._catalog = tuple(catalog)
        self._entries = index_catalog(self._catalog)
        self._metadata = metadata_client
        self._stale_after_days = stale_after_days
        self._clock = clock
        self._state = CanonicalState.empty()
        self._history: deque[CanonicalState] = deque(maxlen=max(undo_limit, 0))
        self._listings: dict[str, SeriesListing] = {}
        self._in_flight: set[str] = set()

    @property
    def state(self) -> CanonicalState:
        return self._state

    @property
    def catalog(self) -> tuple[CatalogEntry, ...]:
        return self._catalog

    @property
    def can_undo(self) -> bool:
        return bool(self._history)

    def listing(self, slug: str) -> SeriesListing | None:
        return self._listings.get(slug)

    async def start(self) -> CanonicalState:
        """Hydrate from durable storage, migrating a legacy record if needed."""

        loaded = await self._store.load()
        self._state = reduce(self._state, Hydrate(loaded))
        self._history.clear()
        logger.info("Tracker hydrated with %s watched keys", len(loaded.watched))
        return self._state

    async def dispatch(self, *actions: Action, undoable: bool = True) -> CanonicalState:
        """Apply ``actions`` as a single transition and persist the result."""

        previous = self._state
        state = previous
        for action in actions:
            state = reduce(state, action)
        if state is previous:
            return state
        if undoable:
            self._history.append(previous)
        self._state = state
        await self._store.save(state)
        return state

    # -- movies -------------------------------------------------------------

    async def toggle_movie(self, slug: str) -> CanonicalState:
        self._entry(slug, "movie")
        return await self.dispatch(ToggleWatched(movie_key(slug)))

    async def resolve_movie(self, slug: str, *, force: bool = False) -> MovieMeta:
        """Fetch runtime and rating for a film and cache them as ``MovieMeta``."""

        entry = self._entry(slug, "movie")
        cached = self._state.movie_meta.get(slug)
        if cached is not None and not force:
            return cached

        guard = movie_key(slug)
        client = self._require_metadata()
        if guard in self._in_flight:
            raise ResolutionInProgressError(f"{entry.title} is already being resolved")
        self._in_flight.add(guard)
        try:
            if cached is not None and cached.external_id > 0:
                external_id = cached.external_id
            else:
                resolved = await client.resolve(
                    entry.title, media_kind="movie", year=entry.year
                )
                external_id = resolved.external_id
            details = await client.fetch_movie(external_id)
        finally:
            self._in_flight.discard(guard)

        meta = MovieMeta(
            external_id=details.external_id,
            runtime_minutes=details.runtime_minutes or 0,
            rating=details.rating or 0.0,
            poster_ref=details.poster_ref,
            fetched_at=self._clock(),
        )
        await self.dispatch(UpdateMovieMeta(slug, meta), undoable=False)
        return meta

    # -- series -------------------------------------------------------------

    async def toggle_series(self, slug: str) -> CanonicalState:
        """Flip a series' aggregate flag and cascade it to the known episodes."""

        self._entry(slug, "series")
        checked = not self._state.is_watched(series_key(slug))
        actions: list[Action] = [SetWatched(series_key(slug), checked)]

        listing = self._listings.get(slug)
        meta = self._state.series_meta.get(slug)
        if listing is not None:
            actions.append(BulkSetEpisodes.of(listing.episode_keys(), checked))
            external_id = listing.external_id
        elif meta is not None and not checked:
            # Without a listing only the already-watched episodes are known.
            actions.append(BulkSetEpisodes.of(self._watched_episode_keys(meta.external_id), False))
            external_id = meta.external_id
        else:
            return await self.dispatch(*actions)

        preview = self._preview(actions)
        actions.append(
            UpdateSeriesMeta(
                slug,
                self._series_meta(
                    slug, listing, checked=preview.count_episodes(external_id)
                ),
            )
        )
        return await self.dispatch(*actions)

    async def toggle_episode(self, slug: str, season: int, episode: int) -> CanonicalState:
        """Toggle one episode and bring the series counts and flag in line."""

        self._entry(slug, "series")
        listing = self._listings.get(slug)
        if listing is None:
            # Cached counts alone cannot validate episode numbers; refetch the listing.
            if slug not in self._state.series_meta or self._metadata is None:
                raise SeriesNotResolvedError("Resolve the series before tracking episodes")
            listing = await self.resolve_series(slug)

        external_id, total = listing.external_id, listing.total_episodes
        key = episode_key(external_id, season, episode)
        if key not in set(listing.iter_episode_keys()):
            raise UnknownEpisodeError(f"Episode S{season}E{episode} not found")

        toggle = ToggleWatched(key)
        checked = self._preview([toggle]).count_episodes(external_id)
        return await self.dispatch(
            toggle,
            SetWatched(series_key(slug), total > 0 and checked == total),
            UpdateSeriesMeta(slug, self._series_meta(slug, listing, checked=checked)),
        )

    async def mark_all_episodes(self, slug: str, watched: bool) -> CanonicalState:
        """Mark every episode of a resolved series watched or unwatched."""

        self._entry(slug, "series")
        listing = self._listings.get(slug)
        if listing is None:
            raise SeriesNotResolvedError("Resolve the series before marking episodes")

        actions: list[Action] = [
            BulkSetEpisodes.of(listing.episode_keys(), watched),
            SetWatched(series_key(slug), watched),
        ]
        checked = self._preview(actions).count_episodes(listing.external_id)
        actions.append(
            UpdateSeriesMeta(slug, self._series_meta(slug, listing, checked=checked))
        )
        return await self.dispatch(*actions)

    async def resolve_series(self, slug: str, *, force: bool = False) -> SeriesListing:
        """Fetch the episode structure of a series and fold it into the state.

        If the series is already flagged complete while fewer than all of its
        episodes are checked, every episode is marked watched.
        """

        entry = self._entry(slug, "series")
        cached = self._listings.get(slug)
        if cached is not None and not force:
            return cached

        guard = series_key(slug)
        client = self._require_metadata()
        if guard in self._in_flight:
            raise ResolutionInProgressError(f"{entry.title} is already being resolved")
        self._in_flight.add(guard)
        try:
            meta = self._state.series_meta.get(slug)
            if meta is not None and meta.external_id > 0:
                external_id = meta.external_id
            else:
                resolved = await client.resolve(
                    entry.title, media_kind="series", year=entry.year
                )
                external_id = resolved.external_id
            listing = await client.fetch_series(external_id)
        finally:
            self._in_flight.discard(guard)

        # Merge against the state as it is now, not as it was before the fetch.
        self._listings[slug] = listing
        state = self._state
        actions: list[Action] = []
        total = listing.total_episodes
        if state.is_watched(series_key(slug)) and state.count_episodes(listing.external_id) < total:
            logger.info("Syncing all %s episodes of %s to its completed flag", total, slug)
            actions.append(BulkSetEpisodes.of(listing.episode_keys(), True))
        checked = self._preview(actions).count_episodes(listing.external_id)
        actions.append(
            UpdateSeriesMeta(
                slug,
                self._series_meta(slug, listing, checked=checked, refreshed=True),
            )
        )
        await self.dispatch(*actions, undoable=False)
        return listing

    # -- whole-state operations ---------------------------------------------

    async def undo(self) -> bool:
        """Restore the watched set from before the last user action.

        Metadata caches are kept as they are now and episode counts are
        recomputed against the restored watched set.
        """

        if not self._history:
            return False
        previous = self._history.pop()
        series_meta = {
            slug: meta.model_copy(
                update={"checked_episodes": previous.count_episodes(meta.external_id)}
            )
            for slug, meta in self._state.series_meta.items()
        }
        restored = CanonicalState(
            watched=previous.watched,
            movie_meta=self._state.movie_meta,
            series_meta=series_meta,
        )
        await self.dispatch(Hydrate(restored), undoable=False)
        return True

    async def reset(self) -> CanonicalState:
        await self._store.reset()
        self._history.clear()
        self._listings.clear()
        return await self.dispatch(Reset(), undoable=False)

    async def import_snapshot(self, raw: str | bytes) -> CanonicalState:
        """Replace the state with an imported snapshot.

        Raises :class:`~app.storage.MalformedSnapshotError` and leaves the
        current state untouched when the snapshot is invalid.
        """

        imported = await self._store.import_snapshot(raw)
        self._state = reduce(self._state, Hydrate(imported))
        self._history.clear()
        self._listings.clear()
        return self._state

    def export_snapshot(self) -> str:
        return self._store.export_snapshot()

    # -- views --------------------------------------------------------------

    def summary(self, *, query: str = "", remaining_only: bool = False) -> dict[str, Any]:
        state = self._state
        runtime = runtime_progress(state, self._catalog)
        upcoming = next_up(state, self._catalog)
        return {
            "percent": title_percent(state, self._catalog),
            "runtime": runtime.to_payload(),
            "watchedCount": watched_count(state),
            "titleCount": len(self._catalog),
            "remainingCount": remaining_count(state, self._catalog),
            "nextUp": upcoming.to_payload() if upcoming else None,
            "canUndo": self.can_undo,
            "items": [
                self._entry_payload(entry)
                for entry in filter_entries(
                    state, self._catalog, query=query, remaining_only=remaining_only
                )
            ],
        }

    def series_view(self, slug: str) -> dict[str, Any]:
        entry = self._entry(slug, "series")
        listing = self._listings.get(slug)
        payload = self._entry_payload(entry)
        if listing is None:
            payload["seasons"] = None
            return payload
        payload["name"] = listing.name
        payload["rating"] = listing.rating
        payload.update(_rating_payload(listing.rating))
        payload["exactWatchedMinutes"] = listing.exact_watched_runtime(self._state)
        payload["seasons"] = [
            {
                "seasonNumber": season.season_number,
                "seasonRuntimeMinutes": season.season_runtime_minutes,
                "episodes": [
                    {
                        **episode.model_dump(by_alias=True, exclude_none=True),
                        "watched": self._state.is_watched(
                            episode_key(
                                listing.external_id,
                                season.season_number,
                                episode.episode_number,
                            )
                        ),
                    }
                    for episode in season.episodes
                ],
            }
            for season in listing.seasons
        ]
        return payload

    # -- helpers ------------------------------------------------------------

    def _entry(self, slug: str, media_type: MediaType) -> CatalogEntry:
        entry = self._entries.get(slug)
        if entry is None or entry.type != media_type:
            raise UnknownTitleError(f"No {media_type} with id {slug!r} in the watch order")
        return entry

    def _require_metadata(self) -> MetadataClient:
        if self._metadata is None:
            raise MetadataNotConfiguredError(
                "TMDB API not configured. Set TMDB_BEARER to enable metadata lookups."
            )
        return self._metadata

    def _preview(self, actions: Iterable[Action]) -> CanonicalState:
        state = self._state
        for action in actions:
            state = reduce(state, action)
        return state

    def _watched_episode_keys(self, external_id: int) -> list[str]:
        prefix = episode_prefix(external_id)
        return [key for key in self._state.watched if key.startswith(prefix)]

    def _series_meta(
        self,
        slug: str,
        listing: SeriesListing | None,
        *,
        checked: int,
        refreshed: bool = False,
    ) -> SeriesMeta:
        current = self._state.series_meta.get(slug)
        if listing is None:
            if current is None:
                raise SeriesNotResolvedError(f"Series {slug!r} has not been resolved")
            return current.model_copy(update={"checked_episodes": checked})
        fetched_at = current.fetched_at if current is not None else 0
        if refreshed or not fetched_at:
            fetched_at = self._clock()
        return SeriesMeta(
            external_id=listing.external_id,
            total_episodes=listing.total_episodes,
            checked_episodes=checked,
            total_runtime_minutes=listing.total_runtime_minutes or 0,
            poster_ref=listing.poster_ref,
            fetched_at=fetched_at,
        )

    def _entry_payload(self, entry: CatalogEntry) -> dict[str, Any]:
        state = self._state
        payload = entry.to_payload()
        payload["complete"] = is_complete(entry, state)
        if entry.is_series:
            payload["watched"] = state.is_watched(series_key(entry.id))
            meta = state.series_meta.get(entry.id)
            if meta is not None:
                payload["meta"] = meta.model_dump(by_alias=True, exclude_none=True)
                payload["episodePercent"] = series_percent(entry, state)
                payload["stale"] = is_stale(
                    meta.fetched_at,
                    now_ms=self._clock(),
                    stale_after_days=self._stale_after_days,
                )
        else:
            payload["watched"] = state.is_watched(movie_key(entry.id))
            movie_meta = state.movie_meta.get(entry.id)
            if movie_meta is not None:
                payload["meta"] = movie_meta.model_dump(by_alias=True, exclude_none=True)
                payload["runtimeText"] = format_runtime(movie_meta.runtime_minutes)
                payload.update(_rating_payload(movie_meta.rating))
                payload["stale"] = is_stale(
                    movie_meta.fetched_at,
                    now_ms=self._clock(),
                    stale_after_days=self._stale_after_days,
                )
        return payload
