"""Pure state transitions for the canonical tracker document."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from .models import CanonicalState, MovieMeta, SeriesMeta


@dataclass(frozen=True, slots=True)
class ToggleWatched:
    """Flip the presence of a single watch-key."""

    key: str


@dataclass(frozen=True, slots=True)
class SetWatched:
    """Set the presence of a single watch-key explicitly."""

    key: str
    checked: bool


@dataclass(frozen=True, slots=True)
class BulkSetEpisodes:
    """Set many watch-keys at once, producing a single new state."""

    keys: tuple[str, ...]
    checked: bool

    @classmethod
    def of(cls, keys: Iterable[str], checked: bool) -> "BulkSetEpisodes":
        return cls(keys=tuple(keys), checked=checked)


@dataclass(frozen=True, slots=True)
class UpdateMovieMeta:
    slug: str
    meta: MovieMeta


@dataclass(frozen=True, slots=True)
class UpdateSeriesMeta:
    slug: str
    meta: SeriesMeta


@dataclass(frozen=True, slots=True)
class Hydrate:
    """Replace the whole state, e.g. after loading or importing."""

    state: CanonicalState


@dataclass(frozen=True, slots=True)
class Reset:
    pass


Action = Union[
    ToggleWatched,
    SetWatched,
    BulkSetEpisodes,
    UpdateMovieMeta,
    UpdateSeriesMeta,
    Hydrate,
    Reset,
]


def _apply(watched: dict[str, bool], key: str, checked: bool) -> None:
    if checked:
        watched[key] = True
    else:
        watched.pop(key, None)


def reduce(state: CanonicalState, action: Action) -> CanonicalState:
    """Return the state produced by applying ``action`` to ``state``.

    The input state is never modified; every branch builds fresh containers for
    whatever it changes and shares the untouched ones.
    """

    if isinstance(action, ToggleWatched):
        watched = dict(state.watched)
        _apply(watched, action.key, action.key not in watched)
        return state.model_copy(update={"watched": watched})

    if isinstance(action, SetWatched):
        if (action.key in state.watched) == action.checked:
            return state
        watched = dict(state.watched)
        _apply(watched, action.key, action.checked)
        return state.model_copy(update={"watched": watched})

    if isinstance(action, BulkSetEpisodes):
        watched = dict(state.watched)
        for key in action.keys:
            _apply(watched, key, action.checked)
        return state.model_copy(update={"watched": watched})

    if isinstance(action, UpdateMovieMeta):
        movie_meta = {**state.movie_meta, action.slug: action.meta}
        return state.model_copy(update={"movie_meta": movie_meta})

    if isinstance(action, UpdateSeriesMeta):
        series_meta = {**state.series_meta, action.slug: action.meta}
        return state.model_copy(update={"series_meta": series_meta})

    if isinstance(action, Hydrate):
        return action.state

    if isinstance(action, Reset):
        return CanonicalState.empty()

    raise TypeError(f"Unsupported action: {action!r}")
