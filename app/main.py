"""Entry point for the FastAPI-powered watch order tracker."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, NoReturn

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .config import settings
from .database import Database
from .services.tmdb import MetadataError, TMDBClient
from .storage import (
    DatabaseStorage,
    KeyValueStorage,
    MalformedSnapshotError,
    MemoryStorage,
    StateStore,
)
from .tracker import TrackerError, WatchTracker
from .watch_order import WATCH_ORDER, series_slugs

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

EXPORT_FILENAME = "star-wars-watch-order.json"
PROXY_CACHE_CONTROL = "public, s-maxage=86400, stale-while-revalidate=3600"


class MarkAllRequest(BaseModel):
    watched: bool


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database: Database | None = None
    backend: KeyValueStorage
    if settings.database_url:
        database = Database(settings.database_url)
        await database.create_all()
        backend = DatabaseStorage(database.session_factory)
    else:
        logger.warning("DATABASE_URL is empty; progress will only be kept in memory")
        backend = MemoryStorage()

    tmdb = TMDBClient(settings, tmdb_http_client)
    if not settings.tmdb_configured:
        logger.warning("TMDB_BEARER is not configured; metadata lookups will fail")
    store = StateStore(
        backend,
        series_slugs=series_slugs(WATCH_ORDER),
        storage_key=settings.storage_key,
        legacy_storage_key=settings.legacy_storage_key,
    )
    tracker = WatchTracker(
        store,
        WATCH_ORDER,
        tmdb,
        undo_limit=settings.undo_limit,
        stale_after_days=settings.stale_after_days,
    )
    await tracker.start()

    fastapi_app.state.tmdb_client = tmdb
    fastapi_app.state.tracker = tracker

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        if database is not None:
            await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Watch order progress tracker with a TMDB metadata proxy",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_tracker(app: FastAPI) -> WatchTracker:
    tracker = getattr(app.state, "tracker", None)
    if not isinstance(tracker, WatchTracker):
        raise RuntimeError("Watch tracker not initialised")
    return tracker


def get_tmdb_client(app: FastAPI) -> TMDBClient:
    client = getattr(app.state, "tmdb_client", None)
    if not isinstance(client, TMDBClient):
        raise RuntimeError("TMDB client not initialised")
    return client


def _raise_http(exc: MetadataError | TrackerError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def register_routes(fastapi_app: FastAPI) -> None:
    def _state_payload(tracker: WatchTracker) -> dict[str, Any]:
        return {
            "state": tracker.state.to_document(),
            "progress": tracker.summary(),
        }

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/catalog")
    async def catalog() -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        return {"items": [entry.to_payload() for entry in tracker.catalog]}

    # -- TMDB proxy ---------------------------------------------------------

    @fastapi_app.get("/api/tmdb/resolve")
    async def tmdb_resolve(
        title: str | None = None,
        year: int | None = None,
        type: str | None = None,
    ) -> JSONResponse:
        if not title or not title.strip():
            raise HTTPException(
                status_code=400,
                detail={"error": "missing_title", "message": "Missing title"},
            )
        client = get_tmdb_client(fastapi_app)
        media_kind = "movie" if type == "movie" else "series"
        try:
            resolved = await client.resolve(title, media_kind=media_kind, year=year)
        except MetadataError as exc:
            _raise_http(exc)
        return JSONResponse(
            resolved.model_dump(by_alias=True, exclude_none=True),
            headers={"Cache-Control": PROXY_CACHE_CONTROL},
        )

    @fastapi_app.get("/api/tmdb/tv/{tv_id}")
    async def tmdb_tv(tv_id: int) -> JSONResponse:
        client = get_tmdb_client(fastapi_app)
        try:
            listing = await client.fetch_series(tv_id)
        except MetadataError as exc:
            _raise_http(exc)
        return JSONResponse(
            listing.model_dump(by_alias=True, exclude_none=True),
            headers={"Cache-Control": PROXY_CACHE_CONTROL},
        )

    @fastapi_app.get("/api/tmdb/movie/{movie_id}")
    async def tmdb_movie(movie_id: int) -> JSONResponse:
        client = get_tmdb_client(fastapi_app)
        try:
            details = await client.fetch_movie(movie_id)
        except MetadataError as exc:
            _raise_http(exc)
        return JSONResponse(
            details.model_dump(by_alias=True, exclude_none=True),
            headers={"Cache-Control": PROXY_CACHE_CONTROL},
        )

    # -- tracker ------------------------------------------------------------

    @fastapi_app.get("/api/state")
    async def current_state() -> dict[str, Any]:
        return get_tracker(fastapi_app).state.to_document()

    @fastapi_app.get("/api/progress")
    async def progress(query: str = "", remaining: bool = False) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        return tracker.summary(query=query, remaining_only=remaining)

    @fastapi_app.post("/api/movies/{slug}/toggle")
    async def toggle_movie(slug: str) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            await tracker.toggle_movie(slug)
        except TrackerError as exc:
            _raise_http(exc)
        return _state_payload(tracker)

    @fastapi_app.post("/api/movies/{slug}/resolve")
    async def resolve_movie(slug: str, force: bool = False) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            meta = await tracker.resolve_movie(slug, force=force)
        except (TrackerError, MetadataError) as exc:
            _raise_http(exc)
        return {"meta": meta.model_dump(by_alias=True, exclude_none=True)}

    @fastapi_app.post("/api/series/{slug}/toggle")
    async def toggle_series(slug: str) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            await tracker.toggle_series(slug)
        except TrackerError as exc:
            _raise_http(exc)
        return _state_payload(tracker)

    @fastapi_app.post("/api/series/{slug}/resolve")
    async def resolve_series(slug: str, force: bool = False) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            await tracker.resolve_series(slug, force=force)
        except (TrackerError, MetadataError) as exc:
            _raise_http(exc)
        return tracker.series_view(slug)

    @fastapi_app.get("/api/series/{slug}/episodes")
    async def series_episodes(slug: str) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            return tracker.series_view(slug)
        except TrackerError as exc:
            _raise_http(exc)

    @fastapi_app.post("/api/series/{slug}/episodes/{season}/{episode}/toggle")
    async def toggle_episode(slug: str, season: int, episode: int) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            await tracker.toggle_episode(slug, season, episode)
        except (TrackerError, MetadataError) as exc:
            _raise_http(exc)
        return _state_payload(tracker)

    @fastapi_app.post("/api/series/{slug}/episodes/mark-all")
    async def mark_all_episodes(slug: str, payload: MarkAllRequest) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        try:
            await tracker.mark_all_episodes(slug, payload.watched)
        except TrackerError as exc:
            _raise_http(exc)
        return _state_payload(tracker)

    @fastapi_app.post("/api/undo")
    async def undo() -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        undone = await tracker.undo()
        return {"undone": undone, **_state_payload(tracker)}

    @fastapi_app.post("/api/reset")
    async def reset() -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        await tracker.reset()
        logger.info("Tracker progress reset")
        return _state_payload(tracker)

    @fastapi_app.get("/api/export")
    async def export_snapshot() -> Response:
        tracker = get_tracker(fastapi_app)
        return Response(
            content=tracker.export_snapshot(),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
        )

    @fastapi_app.post("/api/import")
    async def import_snapshot(request: Request) -> dict[str, Any]:
        tracker = get_tracker(fastapi_app)
        raw = await request.body()
        try:
            await tracker.import_snapshot(raw)
        except MalformedSnapshotError as exc:
            raise HTTPException(
                status_code=400,
                detail={"error": "malformed_snapshot", "message": str(exc)},
            ) from exc
        return _state_payload(tracker)


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
