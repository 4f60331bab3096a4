"""Client for resolving titles and episode structures from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import Settings
from ..models import (
    Episode,
    MediaKind,
    MovieDetails,
    ResolvedTitle,
    Season,
    SeriesListing,
)

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class MetadataError(RuntimeError):
    """Base class for recoverable failures talking to TMDB."""

    error_code = "metadata_error"
    status_code = 502

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"error": self.error_code, "message": self.message}


class MetadataNotConfiguredError(MetadataError):
    error_code = "tmdb_not_configured"
    status_code = 500


class TitleNotFoundError(MetadataError):
    error_code = "not_found"
    status_code = 404


class UpstreamAuthError(MetadataError):
    error_code = "tmdb_auth_failed"
    status_code = 502


class UpstreamRateLimitedError(MetadataError):
    error_code = "rate_limited"
    status_code = 429


class UpstreamUnavailableError(MetadataError):
    error_code = "tmdb_unavailable"
    status_code = 502


class InvalidMetadataResponseError(MetadataError):
    error_code = "invalid_response"
    status_code = 502


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _SearchResult(_Payload):
    id: int
    name: str | None = None
    title: str | None = None
    original_name: str | None = None
    original_title: str | None = None
    first_air_date: str | None = None
    release_date: str | None = None

    @property
    def release(self) -> str:
        return self.first_air_date or self.release_date or ""

    def display_name(self, fallback: str) -> str:
        return (
            self.name
            or self.title
            or self.original_name
            or self.original_title
            or fallback
        )


class _SearchPage(_Payload):
    results: list[_SearchResult] = []


class _SeasonSummary(_Payload):
    season_number: int


class _TVDetails(_Payload):
    id: int
    name: str | None = None
    original_name: str | None = None
    vote_average: float | None = None
    poster_path: str | None = None
    seasons: list[_SeasonSummary] = []


class _EpisodeDetails(_Payload):
    episode_number: int
    name: str | None = None
    air_date: str | None = None
    runtime: int | None = None


class _SeasonDetails(_Payload):
    episodes: list[_EpisodeDetails] = []


class _MovieDetails(_Payload):
    id: int
    title: str | None = None
    original_title: str | None = None
    runtime: int | None = None
    vote_average: float | None = None
    poster_path: str | None = None


class TMDBClient:
    """Thin proxy around the TMDB v3 API authenticated with a bearer token."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        if not self._settings.tmdb_configured:
            raise MetadataNotConfiguredError(
                "TMDB API not configured. Set TMDB_BEARER to enable metadata lookups."
            )
        return {
            "Authorization": f"Bearer {self._settings.tmdb_bearer}",
            "Accept": "application/json",
        }

    async def resolve(
        self, title: str, *, media_kind: MediaKind, year: int | None = None
    ) -> ResolvedTitle:
        """Return the best TMDB match for a catalog title."""

        normalized_title = (title or "").strip()
        if not normalized_title:
            raise ValueError("A title is required to resolve TMDB metadata")

        endpoint = "/search/movie" if media_kind == "movie" else "/search/tv"
        params: dict[str, Any] = {
            "query": normalized_title,
            "include_adult": "false",
            "page": 1,
        }
        if year:
            params["year"] = year

        page = await self._get(
            endpoint,
            _SearchPage,
            params=params,
            not_found_message=f'No {media_kind} found matching "{normalized_title}"',
        )
        if not page.results:
            suffix = f" from {year}" if year else ""
            logger.info("No TMDB results for %s (%s)", normalized_title, year)
            raise TitleNotFoundError(
                f'No {media_kind} found matching "{normalized_title}"{suffix}'
            )

        chosen = page.results[0]
        if year:
            for candidate in page.results:
                if candidate.release.startswith(str(year)):
                    chosen = candidate
                    break

        return ResolvedTitle(
            external_id=chosen.id,
            canonical_name=chosen.display_name(normalized_title),
            media_kind=media_kind,
            year=self._extract_year(chosen.release),
        )

    async def fetch_series(self, external_id: int) -> SeriesListing:
        """Return the season/episode structure for a series, specials excluded."""

        details = await self._get(
            f"/tv/{external_id}",
            _TVDetails,
            not_found_message=f"No TV series found with ID {external_id}",
        )
        season_numbers = sorted(
            {season.season_number for season in details.seasons if season.season_number != 0}
        )
        seasons = await asyncio.gather(
            *(self._fetch_season(external_id, number) for number in season_numbers)
        )

        total_runtime = 0
        for season in seasons:
            total_runtime += season.season_runtime_minutes or 0

        return SeriesListing(
            external_id=details.id,
            name=details.name or details.original_name or "",
            rating=details.vote_average,
            total_runtime_minutes=total_runtime or None,
            poster_ref=self._build_image_url(details.poster_path),
            seasons=list(seasons),
        )

    async def fetch_movie(self, external_id: int) -> MovieDetails:
        details = await self._get(
            f"/movie/{external_id}",
            _MovieDetails,
            not_found_message=f"No movie found with ID {external_id}",
        )
        return MovieDetails(
            external_id=details.id,
            name=details.title or details.original_title or "",
            runtime_minutes=details.runtime or None,
            rating=details.vote_average,
            poster_ref=self._build_image_url(details.poster_path),
        )

    async def _fetch_season(self, external_id: int, season_number: int) -> Season:
        try:
            payload = await self._get(
                f"/tv/{external_id}/season/{season_number}",
                _SeasonDetails,
                not_found_message=f"Season {season_number} not found",
            )
        except MetadataError as exc:
            logger.warning(
                "Season %s fetch failed for TV %s: %s", season_number, external_id, exc
            )
            return Season(season_number=season_number, episodes=[])

        episodes = sorted(
            (
                Episode(
                    episode_number=episode.episode_number,
                    name=episode.name or "",
                    air_date=episode.air_date,
                    runtime_minutes=episode.runtime,
                )
                for episode in payload.episodes
            ),
            key=lambda episode: episode.episode_number,
        )
        season_runtime = sum(episode.runtime_minutes or 0 for episode in episodes)
        return Season(
            season_number=season_number,
            episodes=episodes,
            season_runtime_minutes=season_runtime or None,
        )

    async def _get(
        self,
        path: str,
        model: type[PayloadT],
        *,
        params: dict[str, Any] | None = None,
        not_found_message: str,
    ) -> PayloadT:
        headers = self._headers()
        try:
            response = await self._client.get(path, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request to %s failed: %s", path, exc)
            raise UpstreamUnavailableError(
                "Unable to reach TMDB. Please try again shortly."
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "TMDB request to %s failed: %s %s",
                path,
                response.status_code,
                response.text,
            )
            raise self._error_for_status(response, not_found_message)

        try:
            data = response.json()
        except ValueError as exc:
            raise InvalidMetadataResponseError("TMDB returned a non-JSON payload") from exc
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("Unexpected TMDB payload from %s: %s", path, exc)
            raise InvalidMetadataResponseError(
                "TMDB returned data in an unexpected format"
            ) from exc

    @staticmethod
    def _error_for_status(
        response: httpx.Response, not_found_message: str
    ) -> MetadataError:
        status = response.status_code
        if status in {401, 403}:
            return UpstreamAuthError(
                "TMDB authentication failed. Please check the configured TMDB_BEARER."
            )
        if status == 404:
            return TitleNotFoundError(not_found_message)
        if status == 429:
            return UpstreamRateLimitedError(
                "TMDB rate limit reached. Please wait a moment and try again."
            )
        return UpstreamUnavailableError(
            f"TMDB API returned {status}: {response.reason_phrase}"
        )

    @staticmethod
    def _extract_year(date_value: str | None) -> int | None:
        if not isinstance(date_value, str) or len(date_value) < 4:
            return None
        try:
            return int(date_value[:4])
        except ValueError:
            return None

    def _build_image_url(self, path: str | None) -> str | None:
        if not path:
            return None
        if path.startswith("http"):
            return path
        return f"{str(self._settings.tmdb_image_url).rstrip('/')}{path}"
