"""Static watch order catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal

from .utils import slugify


MediaType = Literal["movie", "series"]


@dataclass(frozen=True)
class CatalogEntry:
    """Describes a single title in the watch order checklist."""

    id: str
    title: str
    year: int
    type: MediaType
    optionality_tier: int | None = None
    # Estimated runtime in minutes, used until TMDB data has been fetched.
    runtime_estimate: int | None = None

    @property
    def is_series(self) -> bool:
        return self.type == "series"

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "type": self.type,
        }
        if self.optionality_tier:
            payload["optionalityTier"] = self.optionality_tier
        if self.runtime_estimate:
            payload["runtimeEstimate"] = self.runtime_estimate
        return payload


def _entry(
    key: str,
    title: str,
    year: int,
    media_type: MediaType,
    *,
    tier: int | None = None,
    runtime: int | None = None,
) -> CatalogEntry:
    return CatalogEntry(
        id=slugify(key),
        title=title,
        year=year,
        type=media_type,
        optionality_tier=tier,
        runtime_estimate=runtime,
    )


WATCH_ORDER: tuple[CatalogEntry, ...] = (
    _entry("The Acolyte 2024", "The Acolyte", 2024, "series", runtime=329),
    _entry("Star Wars The Phantom Menace 1999", "Star Wars: The Phantom Menace (Episode I)", 1999, "movie", runtime=136),
    _entry("Star Wars Attack of the Clones 2002", "Star Wars: Attack of the Clones (Episode II)", 2002, "movie", runtime=142),
    _entry("Star Wars The Clone Wars movie 2008", "Star Wars: The Clone Wars (movie)", 2008, "movie", runtime=98),
    _entry("Star Wars The Clone Wars series 2008", "Star Wars: The Clone Wars (series)", 2008, "series", runtime=2952),
    _entry("Star Wars Tales of the Jedi 2022", "Star Wars: Tales of the Jedi", 2022, "series", tier=1, runtime=93),
    _entry("Star Wars Revenge of the Sith 2005", "Star Wars: Revenge of the Sith (Episode III)", 2005, "movie", runtime=140),
    _entry("Star Wars Tales of the Empire 2024", "Star Wars: Tales of the Empire", 2024, "series", tier=1, runtime=90),
    _entry("Star Wars Maul Shadow Lord 2026", "Star Wars: Maul - Shadow Lord", 2026, "series", runtime=320),
    _entry("Star Wars Tales of the Underworld 2025", "Star Wars: Tales of the Underworld", 2025, "series", tier=1, runtime=90),
    _entry("Star Wars The Bad Batch 2021", "Star Wars: The Bad Batch", 2021, "series", runtime=1178),
    _entry("Solo A Star Wars Story 2018", "Solo: A Star Wars Story", 2018, "movie", runtime=135),
    _entry("Obi-Wan Kenobi 2022", "Obi-Wan Kenobi", 2022, "series", runtime=270),
    _entry("Andor 2022", "Andor", 2022, "series", tier=2, runtime=720),
    _entry("Star Wars Rebels 2014", "Star Wars Rebels", 2014, "series", tier=2, runtime=1650),
    _entry("Rogue One A Star Wars Story 2016", "Rogue One: A Star Wars Story", 2016, "movie", runtime=133),
    _entry("Star Wars A New Hope 1977", "Star Wars: A New Hope (Episode IV)", 1977, "movie", runtime=121),
    _entry("Star Wars The Empire Strikes Back 1980", "Star Wars: The Empire Strikes Back (Episode V)", 1980, "movie", runtime=124),
    _entry("Star Wars Return of the Jedi 1983", "Star Wars: Return of the Jedi (Episode VI)", 1983, "movie", runtime=131),
    _entry("The Mandalorian 2019", "The Mandalorian", 2019, "series", runtime=912),
    _entry("The Book of Boba Fett 2021", "The Book of Boba Fett", 2021, "series", runtime=294),
    _entry("Ahsoka 2023", "Ahsoka", 2023, "series", runtime=360),
    _entry("Skeleton Crew 2024", "Skeleton Crew", 2024, "series", runtime=320),
    _entry("Star Wars Resistance 2018", "Star Wars Resistance", 2018, "series", tier=3, runtime=880),
    _entry("Star Wars The Force Awakens 2015", "Star Wars: The Force Awakens (Episode VII)", 2015, "movie", runtime=138),
    _entry("Star Wars The Last Jedi 2017", "Star Wars: The Last Jedi (Episode VIII)", 2017, "movie", runtime=152),
    _entry("Star Wars The Rise of Skywalker 2019", "Star Wars: The Rise of Skywalker (Episode IX)", 2019, "movie", runtime=142),
)


def index_catalog(catalog: Iterable[CatalogEntry]) -> dict[str, CatalogEntry]:
    """Return catalog entries keyed by slug."""

    return {entry.id: entry for entry in catalog}


def series_slugs(catalog: Iterable[CatalogEntry]) -> frozenset[str]:
    """Return the slugs of every series in the catalog."""

    return frozenset(entry.id for entry in catalog if entry.is_series)
