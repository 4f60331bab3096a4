"""Durable storage of the canonical tracker document."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Collection, Mapping
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import StorageRecord
from .migration import migrate_legacy
from .models import CanonicalState

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "sw-watch-v2"
DEFAULT_LEGACY_STORAGE_KEY = "sw-watch-v1"


class MalformedSnapshotError(ValueError):
    """Raised when an imported snapshot does not have the expected shape."""


class KeyValueStorage(Protocol):
    """Named blobs with replace-whole-value semantics."""

    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage, used by tests and when DATABASE_URL is empty."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    @property
    def items(self) -> dict[str, str]:
        return dict(self._items)

    async def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class DatabaseStorage:
    """Storage backed by the ``storage_records`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_item(self, key: str) -> str | None:
        async with self._session_factory() as session:
            record = await session.get(StorageRecord, key)
            return record.value if record is not None else None

    async def set_item(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            await session.merge(StorageRecord(key=key, value=value))
            await session.commit()

    async def remove_item(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(StorageRecord).where(StorageRecord.key == key))
            await session.commit()


def parse_snapshot(raw: str | bytes) -> CanonicalState:
    """Validate a serialized document and return the state it describes."""

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedSnapshotError("Snapshot is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedSnapshotError("Snapshot must be a JSON object")
    if not isinstance(payload.get("watched"), dict):
        raise MalformedSnapshotError("Invalid file format: missing watched data")
    try:
        return CanonicalState.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "invalid value")
        detail = f"{location}: {message}" if location else message
        raise MalformedSnapshotError(f"Invalid snapshot: {detail}") from exc


class StateStore:
    """Loads, migrates, persists and serializes the canonical document.

    Storage failures never escape this class: reads that fail are treated as
    "no data" and writes that fail are logged and dropped, leaving the caller's
    in-memory state authoritative for the rest of the session.
    """

    def __init__(
        self,
        backend: KeyValueStorage,
        *,
        series_slugs: Collection[str] = (),
        storage_key: str = DEFAULT_STORAGE_KEY,
        legacy_storage_key: str = DEFAULT_LEGACY_STORAGE_KEY,
    ) -> None:
        self._backend = backend
        self._series_slugs = frozenset(series_slugs)
        self._storage_key = storage_key
        self._legacy_storage_key = legacy_storage_key
        self._current = CanonicalState.empty()
        self._write_lock = asyncio.Lock()

    @property
    def current(self) -> CanonicalState:
        """The state most recently loaded, saved or imported."""

        return self._current

    async def load(self) -> CanonicalState:
        state = await self._read_current()
        if state is None:
            state = await self._read_legacy()
            if state is not None:
                logger.info(
                    "Migrated legacy record %s to %s (%s watched keys)",
                    self._legacy_storage_key,
                    self._storage_key,
                    len(state.watched),
                )
                await self.save(state)
        if state is None:
            state = CanonicalState.empty()
        self._current = state
        return state

    async def save(self, state: CanonicalState) -> None:
        """Persist ``state``, or whatever newer state replaced it while queued."""

        self._current = state
        async with self._write_lock:
            payload = json.dumps(self._current.to_document(), separators=(",", ":"))
            try:
                await self._backend.set_item(self._storage_key, payload)
            except Exception as exc:
                logger.warning("Failed to persist tracker state: %s", exc)

    async def reset(self) -> None:
        """Delete the current-schema record; in-memory state is left alone."""

        async with self._write_lock:
            try:
                await self._backend.remove_item(self._storage_key)
            except Exception as exc:
                logger.warning("Failed to delete tracker state: %s", exc)

    def export_snapshot(self) -> str:
        return json.dumps(self._current.to_document(), indent=2)

    async def import_snapshot(self, raw: str | bytes) -> CanonicalState:
        state = parse_snapshot(raw)
        await self.save(state)
        return state

    async def _read_raw(self, key: str) -> str | None:
        try:
            return await self._backend.get_item(key)
        except Exception as exc:
            logger.warning("Failed to read storage record %s: %s", key, exc)
            return None

    async def _read_current(self) -> CanonicalState | None:
        raw = await self._read_raw(self._storage_key)
        if not raw:
            return None
        try:
            return parse_snapshot(raw)
        except MalformedSnapshotError as exc:
            logger.warning("Ignoring corrupt record %s: %s", self._storage_key, exc)
            return None

    async def _read_legacy(self) -> CanonicalState | None:
        raw = await self._read_raw(self._legacy_storage_key)
        if not raw:
            return None
        try:
            record = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(
                "Ignoring corrupt legacy record %s: %s", self._legacy_storage_key, exc
            )
            return None
        if not isinstance(record, dict):
            logger.warning("Ignoring legacy record %s: not an object", self._legacy_storage_key)
            return None
        try:
            return migrate_legacy(record, self._series_slugs)
        except ValidationError as exc:
            logger.warning(
                "Legacy record %s could not be migrated: %s", self._legacy_storage_key, exc
            )
            return None
