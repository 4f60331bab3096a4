"""Pydantic models describing the persisted tracker document and TMDB payloads."""

from __future__ import annotations

from typing import Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import episode_key, episode_prefix

MediaKind = Literal["movie", "series"]

# Runtimes at or beyond this many minutes are treated as corrupt upstream data.
MAX_PLAUSIBLE_RUNTIME = 100_000


def valid_runtime(minutes: float | None) -> float | None:
    """Return ``minutes`` when it is a plausible runtime, otherwise ``None``."""

    if minutes is None:
        return None
    if minutes <= 0 or minutes >= MAX_PLAUSIBLE_RUNTIME:
        return None
    return minutes


class MovieMeta(BaseModel):
    """Cached TMDB facts for a standalone film."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    external_id: int = Field(alias="externalId")
    runtime_minutes: int = Field(default=0, alias="runtimeMinutes")
    rating: float = 0.0
    poster_ref: str | None = Field(default=None, alias="posterRef")
    fetched_at: int = Field(default=0, alias="fetchedAt")

    @field_validator("rating", mode="before")
    @classmethod
    def _clamp_rating(cls, value: object) -> float:
        if value is None:
            return 0.0
        rating = float(value)  # type: ignore[arg-type]
        return min(max(rating, 0.0), 10.0)


class SeriesMeta(BaseModel):
    """Denormalised episode counts for a resolved series."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    external_id: int = Field(alias="externalId")
    total_episodes: int = Field(default=0, alias="totalEpisodes", ge=0)
    checked_episodes: int = Field(default=0, alias="checkedEpisodes", ge=0)
    total_runtime_minutes: int = Field(default=0, alias="totalRuntimeMinutes")
    poster_ref: str | None = Field(default=None, alias="posterRef")
    fetched_at: int = Field(default=0, alias="fetchedAt")


class CanonicalState(BaseModel):
    """The single persisted document: watched keys plus metadata caches."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    watched: dict[str, bool] = Field(default_factory=dict)
    movie_meta: dict[str, MovieMeta] = Field(default_factory=dict, alias="movieMeta")
    series_meta: dict[str, SeriesMeta] = Field(
        default_factory=dict, alias="seriesMeta"
    )

    @field_validator("watched", mode="before")
    @classmethod
    def _only_true_entries(cls, value: object) -> dict[str, bool]:
        """Keep only ``true`` entries; absence is the canonical unwatched state."""

        if not isinstance(value, dict):
            raise ValueError("watched must be an object of key/boolean pairs")
        cleaned: dict[str, bool] = {}
        for key, flag in value.items():
            if not isinstance(flag, bool):
                raise ValueError(f"watched entry {key!r} must be a boolean")
            if flag:
                cleaned[str(key)] = True
        return cleaned

    @field_validator("movie_meta", "series_meta", mode="before")
    @classmethod
    def _default_missing_maps(cls, value: object) -> object:
        return {} if value is None else value

    @classmethod
    def empty(cls) -> "CanonicalState":
        return cls()

    def is_watched(self, key: str) -> bool:
        return key in self.watched

    def count_episodes(self, tmdb_id: int) -> int:
        """Count the watched episode keys belonging to one series."""

        prefix = episode_prefix(tmdb_id)
        return sum(1 for key in self.watched if key.startswith(prefix))

    def to_document(self) -> dict[str, object]:
        """Return the JSON-compatible document written to durable storage."""

        return self.model_dump(by_alias=True, exclude_none=True)


class ResolvedTitle(BaseModel):
    """Outcome of resolving a catalog title against TMDB search."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: int = Field(alias="externalId")
    canonical_name: str = Field(alias="canonicalName")
    media_kind: MediaKind = Field(alias="mediaKind")
    year: int | None = None


class Episode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    episode_number: int = Field(alias="episodeNumber")
    name: str = ""
    air_date: str | None = Field(default=None, alias="airDate")
    runtime_minutes: int | None = Field(default=None, alias="runtimeMinutes")


class Season(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    season_number: int = Field(alias="seasonNumber")
    episodes: list[Episode] = Field(default_factory=list)
    season_runtime_minutes: int | None = Field(
        default=None, alias="seasonRuntimeMinutes"
    )


class SeriesListing(BaseModel):
    """Season and episode structure of a series as served by the proxy."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: int = Field(alias="externalId")
    name: str
    rating: float | None = None
    total_runtime_minutes: int | None = Field(default=None, alias="totalRuntimeMinutes")
    poster_ref: str | None = Field(default=None, alias="posterRef")
    seasons: list[Season] = Field(default_factory=list)

    @property
    def total_episodes(self) -> int:
        return sum(len(season.episodes) for season in self.seasons)

    def iter_episode_keys(self) -> Iterator[str]:
        for season in self.seasons:
            for episode in season.episodes:
                yield episode_key(
                    self.external_id, season.season_number, episode.episode_number
                )

    def episode_keys(self) -> list[str]:
        return list(self.iter_episode_keys())

    def exact_watched_runtime(self, state: CanonicalState) -> int:
        """Sum the runtimes of the episodes that are actually watched."""

        total = 0
        for season in self.seasons:
            for episode in season.episodes:
                key = episode_key(
                    self.external_id, season.season_number, episode.episode_number
                )
                if key in state.watched and episode.runtime_minutes:
                    total += episode.runtime_minutes
        return total


class MovieDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_id: int = Field(alias="externalId")
    name: str
    runtime_minutes: int | None = Field(default=None, alias="runtimeMinutes")
    rating: float | None = None
    poster_ref: str | None = Field(default=None, alias="posterRef")

