"""Tests for the tracker session: toggles, cascades, merges and undo."""

from __future__ import annotations

import json

import anyio
import pytest

from app.models import CanonicalState, SeriesListing, SeriesMeta
from app.services.tmdb import MetadataNotConfiguredError
from app.storage import MalformedSnapshotError, MemoryStorage
from app.tracker import (
    ResolutionInProgressError,
    SeriesNotResolvedError,
    UnknownEpisodeError,
    UnknownTitleError,
)

from conftest import FIXED_NOW, FakeMetadataClient


def _episodes(state: CanonicalState, external_id: int = 42) -> set[str]:
    prefix = f"tv:{external_id}:"
    return {key for key in state.watched if key.startswith(prefix)}


@pytest.mark.anyio("asyncio")
async def test_checking_every_episode_completes_the_series(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.start()
    await tracker.resolve_series("b")

    await tracker.toggle_movie("a")
    assert tracker.summary()["percent"] == 50.0

    await tracker.toggle_episode("b", 1, 1)
    await tracker.toggle_episode("b", 1, 2)
    await tracker.toggle_episode("b", 2, 1)
    assert tracker.state.series_meta["b"].checked_episodes == 3
    assert not tracker.state.is_watched("series:b")
    assert tracker.summary()["percent"] == 87.5

    await tracker.toggle_episode("b", 2, 2)

    assert tracker.state.series_meta["b"].checked_episodes == 4
    assert tracker.state.is_watched("series:b")
    assert tracker.summary()["percent"] == 100.0
    assert tracker.summary()["nextUp"] is None


@pytest.mark.anyio("asyncio")
async def test_episode_counts_track_watched_keys(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.resolve_series("b")

    for season, episode in [(1, 1), (1, 2), (1, 1), (2, 2), (2, 2), (2, 1)]:
        await tracker.toggle_episode("b", season, episode)
        meta = tracker.state.series_meta["b"]
        count = len(_episodes(tracker.state))
        assert meta.checked_episodes == count
        assert tracker.state.is_watched("series:b") == (count == meta.total_episodes)

    assert _episodes(tracker.state) == {"tv:42:S1:E2", "tv:42:S2:E1"}


@pytest.mark.anyio("asyncio")
async def test_mark_all_then_clear_all(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.resolve_series("b")

    await tracker.mark_all_episodes("b", True)
    assert len(_episodes(tracker.state)) == 4
    assert tracker.state.is_watched("series:b")

    await tracker.mark_all_episodes("b", False)
    assert _episodes(tracker.state) == set()
    assert not tracker.state.is_watched("series:b")
    assert tracker.state.series_meta["b"].checked_episodes == 0


@pytest.mark.anyio("asyncio")
async def test_resolve_syncs_episodes_of_a_completed_series(make_tracker, metadata_client) -> None:
    stored = CanonicalState(
        watched={"series:b": True, "tv:42:S1:E1": True},
        series_meta={
            "b": SeriesMeta(
                external_id=42, total_episodes=4, checked_episodes=1, fetched_at=1
            )
        },
    )
    backend = MemoryStorage({"sw-watch-v2": json.dumps(stored.to_document())})
    tracker = make_tracker(backend)
    await tracker.start()

    await tracker.resolve_series("b")

    assert len(_episodes(tracker.state)) == 4
    meta = tracker.state.series_meta["b"]
    assert meta.checked_episodes == 4
    assert meta.total_runtime_minutes == 200
    assert meta.fetched_at == FIXED_NOW
    assert metadata_client.resolve_calls == []
    assert metadata_client.series_calls == [42]
    saved = json.loads(backend.items["sw-watch-v2"])
    assert saved["seriesMeta"]["b"]["checkedEpisodes"] == 4


@pytest.mark.anyio("asyncio")
async def test_resolve_keeps_partial_progress_of_unfinished_series(make_tracker, metadata_client) -> None:
    tracker = make_tracker()
    await tracker.toggle_series("b")
    await tracker.toggle_series("b")

    await tracker.resolve_series("b")

    assert metadata_client.resolve_calls == [("Show B", "series", 2001)]
    assert _episodes(tracker.state) == set()
    assert tracker.state.series_meta["b"].checked_episodes == 0


@pytest.mark.anyio("asyncio")
async def test_resolve_uses_cached_listing_unless_forced(make_tracker, metadata_client) -> None:
    tracker = make_tracker()

    first = await tracker.resolve_series("b")
    second = await tracker.resolve_series("b")
    await tracker.resolve_series("b", force=True)

    assert first is second
    assert metadata_client.series_calls == [42, 42]
    assert len(metadata_client.resolve_calls) == 1


class SlowMetadataClient(FakeMetadataClient):
    def __init__(self) -> None:
        super().__init__()
        self.started = anyio.Event()
        self.release = anyio.Event()

    async def fetch_series(self, external_id: int) -> SeriesListing:
        self.started.set()
        await self.release.wait()
        return await super().fetch_series(external_id)


@pytest.mark.anyio("asyncio")
async def test_concurrent_resolution_of_one_series_is_rejected(make_tracker) -> None:
    client = SlowMetadataClient()
    tracker = make_tracker(client=client)

    async with anyio.create_task_group() as group:
        group.start_soon(tracker.resolve_series, "b")
        await client.started.wait()
        with pytest.raises(ResolutionInProgressError):
            await tracker.resolve_series("b")
        client.release.set()

    assert tracker.listing("b") is not None
    assert client.series_calls == [42]


@pytest.mark.anyio("asyncio")
async def test_toggle_series_cascades_to_known_episodes(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.resolve_series("b")

    await tracker.toggle_series("b")
    assert len(_episodes(tracker.state)) == 4
    assert tracker.state.series_meta["b"].checked_episodes == 4

    await tracker.toggle_series("b")
    assert _episodes(tracker.state) == set()
    assert tracker.state.series_meta["b"].checked_episodes == 0


@pytest.mark.anyio("asyncio")
async def test_toggle_series_without_metadata_flips_the_flag(make_tracker) -> None:
    tracker = make_tracker()

    await tracker.toggle_series("b")

    assert tracker.state.watched == {"series:b": True}
    assert tracker.state.series_meta == {}


@pytest.mark.anyio("asyncio")
async def test_episode_operations_need_a_resolved_series(make_tracker) -> None:
    tracker = make_tracker()

    with pytest.raises(SeriesNotResolvedError):
        await tracker.toggle_episode("b", 1, 1)
    with pytest.raises(SeriesNotResolvedError):
        await tracker.mark_all_episodes("b", True)

    await tracker.resolve_series("b")
    with pytest.raises(UnknownEpisodeError):
        await tracker.toggle_episode("b", 3, 1)


@pytest.mark.anyio("asyncio")
async def test_unknown_titles_are_rejected(make_tracker) -> None:
    tracker = make_tracker()

    with pytest.raises(UnknownTitleError):
        await tracker.toggle_movie("nope")
    with pytest.raises(UnknownTitleError):
        await tracker.toggle_movie("b")
    with pytest.raises(UnknownTitleError):
        await tracker.toggle_series("a")


@pytest.mark.anyio("asyncio")
async def test_resolve_movie_caches_metadata(make_tracker) -> None:
    tracker = make_tracker()

    meta = await tracker.resolve_movie("a")

    assert meta.external_id == 7
    assert meta.runtime_minutes == 120
    assert meta.fetched_at == FIXED_NOW
    assert tracker.state.movie_meta["a"] == meta
    summary = tracker.summary()
    assert summary["runtime"]["totalMinutes"] == 520
    film = summary["items"][0]
    assert film["runtimeText"] == "2h"
    assert (film["ratingText"], film["stars"], film["ratingTier"]) == ("7.4", 4, "good")
    assert not tracker.can_undo


@pytest.mark.anyio("asyncio")
async def test_metadata_lookups_require_a_client(make_tracker) -> None:
    tracker = make_tracker(client=None)

    with pytest.raises(MetadataNotConfiguredError):
        await tracker.resolve_series("b")


@pytest.mark.anyio("asyncio")
async def test_undo_restores_previous_watched_set(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.resolve_series("b")
    assert not tracker.can_undo

    await tracker.toggle_movie("a")
    await tracker.toggle_episode("b", 1, 1)

    assert await tracker.undo()
    assert _episodes(tracker.state) == set()
    assert tracker.state.series_meta["b"].checked_episodes == 0
    assert tracker.state.series_meta["b"].total_episodes == 4

    assert await tracker.undo()
    assert tracker.state.watched == {}
    assert not await tracker.undo()


@pytest.mark.anyio("asyncio")
async def test_undo_history_is_bounded(make_tracker) -> None:
    tracker = make_tracker()

    for _ in range(60):
        await tracker.toggle_movie("a")

    undone = 0
    while await tracker.undo():
        undone += 1
    assert undone == 50


@pytest.mark.anyio("asyncio")
async def test_reset_clears_state_and_history(make_tracker) -> None:
    backend = MemoryStorage()
    tracker = make_tracker(backend)
    await tracker.toggle_movie("a")

    await tracker.reset()

    assert tracker.state == CanonicalState.empty()
    assert not tracker.can_undo
    assert json.loads(backend.items["sw-watch-v2"]) == {
        "watched": {},
        "movieMeta": {},
        "seriesMeta": {},
    }


@pytest.mark.anyio("asyncio")
async def test_changes_survive_a_restart(make_tracker) -> None:
    backend = MemoryStorage()
    tracker = make_tracker(backend)
    await tracker.resolve_series("b")
    await tracker.toggle_episode("b", 1, 1)

    restarted = make_tracker(backend)
    await restarted.start()

    assert restarted.state == tracker.state
    assert restarted.listing("b") is None
    await restarted.toggle_episode("b", 1, 2)
    assert restarted.state.series_meta["b"].checked_episodes == 2
    assert restarted.listing("b") is not None


@pytest.mark.anyio("asyncio")
async def test_import_replaces_state_and_rejects_garbage(make_tracker) -> None:
    tracker = make_tracker()
    await tracker.toggle_movie("a")

    await tracker.import_snapshot('{"watched": {"series:b": true}}')
    assert tracker.state.watched == {"series:b": True}
    assert not tracker.can_undo

    exported = tracker.export_snapshot()
    with pytest.raises(MalformedSnapshotError):
        await tracker.import_snapshot('{"movieMeta": {}}')
    assert tracker.export_snapshot() == exported


@pytest.mark.anyio("asyncio")
async def test_series_view_lists_episodes_with_flags(make_tracker) -> None:
    tracker = make_tracker()
    assert tracker.series_view("b")["seasons"] is None

    await tracker.resolve_series("b")
    await tracker.toggle_episode("b", 2, 1)
    view = tracker.series_view("b")

    assert view["exactWatchedMinutes"] == 50
    assert view["episodePercent"] == 25
    assert not view["stale"]
    season_two = view["seasons"][1]
    assert season_two["seasonNumber"] == 2
    assert [episode["watched"] for episode in season_two["episodes"]] == [True, False]


@pytest.mark.anyio("asyncio")
async def test_episode_numbers_are_checked_after_a_restart(make_tracker, metadata_client) -> None:
    backend = MemoryStorage()
    tracker = make_tracker(backend)
    await tracker.resolve_series("b")
    for season, episode in [(1, 1), (1, 2), (2, 1)]:
        await tracker.toggle_episode("b", season, episode)

    restarted = make_tracker(backend)
    await restarted.start()
    with pytest.raises(UnknownEpisodeError):
        await restarted.toggle_episode("b", 9, 9)

    assert restarted.state.series_meta["b"].checked_episodes == 3
    assert not restarted.state.is_watched("series:b")
    assert not restarted.state.is_watched("tv:42:S2:E2")
    assert metadata_client.series_calls == [42, 42]


@pytest.mark.anyio("asyncio")
async def test_episode_toggle_after_restart_needs_a_client(make_tracker) -> None:
    backend = MemoryStorage()
    tracker = make_tracker(backend)
    await tracker.resolve_series("b")

    restarted = make_tracker(backend, client=None)
    await restarted.start()

    with pytest.raises(SeriesNotResolvedError):
        await restarted.toggle_episode("b", 1, 1)
    assert _episodes(restarted.state) == set()


@pytest.mark.anyio("asyncio")
async def test_resolving_after_reset_rebuilds_series_metadata(make_tracker, metadata_client) -> None:
    backend = MemoryStorage()
    tracker = make_tracker(backend)
    await tracker.resolve_series("b")

    await tracker.reset()
    assert tracker.listing("b") is None

    await tracker.resolve_series("b")

    assert tracker.state.series_meta["b"].total_episodes == 4
    assert metadata_client.series_calls == [42, 42]
    saved = json.loads(backend.items["sw-watch-v2"])
    assert saved["seriesMeta"]["b"]["totalEpisodes"] == 4
    await tracker.toggle_episode("b", 1, 1)
    assert tracker.state.series_meta["b"].checked_episodes == 1


class SlowFirstWriteStorage(MemoryStorage):
    """Storage whose first write stalls long enough for a later one to overtake it."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0

    async def set_item(self, key: str, value: str) -> None:
        self.writes += 1
        if self.writes == 1:
            await anyio.sleep(0.05)
        await super().set_item(key, value)


@pytest.mark.anyio("asyncio")
async def test_overlapping_mutations_persist_the_newest_state(make_tracker) -> None:
    backend = SlowFirstWriteStorage()
    tracker = make_tracker(backend)

    async with anyio.create_task_group() as group:
        group.start_soon(tracker.toggle_movie, "a")
        await anyio.sleep(0.01)
        await tracker.toggle_series("b")

    expected = {"movie:a": True, "series:b": True}
    assert tracker.state.watched == expected
    assert json.loads(backend.items["sw-watch-v2"])["watched"] == expected

    restarted = make_tracker(backend)
    await restarted.start()
    assert restarted.state.watched == expected
