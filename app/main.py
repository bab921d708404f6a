"""Entry point for the FastAPI-powered catalog replica service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Literal

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, HttpUrl

from .config import settings
from .database import Database
from .db_models import StashSource, SyncState
from .entities import kind_from_plural
from .errors import (
    CacheNotReadyError,
    CompositeKeyError,
    QueryValidationError,
    UnknownSourceError,
)
from .filters import MAX_PER_PAGE, EntityQuery, QueryPage
from .services.query_builder import QueryBuilder
from .services.stash import SourceConnection, StashClient
from .services.sync_engine import SyncEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.source_timeout_seconds, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    def _client_factory(connection: SourceConnection) -> StashClient:
        return StashClient(connection, settings, http_client)

    sync_engine = SyncEngine(settings, database.session_factory, _client_factory)
    query_builder = QueryBuilder(database.session_factory)

    app.state.sync_engine = sync_engine
    app.state.query_builder = query_builder
    app.state.database = database
    await sync_engine.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await sync_engine.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Query-optimised local replica of Stash catalog metadata",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_sync_engine(app: FastAPI) -> SyncEngine:
    engine = getattr(app.state, "sync_engine", None)
    if not isinstance(engine, SyncEngine):
        raise RuntimeError("Sync engine not initialised")
    return engine


def get_query_builder(app: FastAPI) -> QueryBuilder:
    builder = getattr(app.state, "query_builder", None)
    if not isinstance(builder, QueryBuilder):
        raise RuntimeError("Query builder not initialised")
    return builder


class SourcePayload(BaseModel):
    """Body accepted when registering an upstream source."""

    id: str | None = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=120)
    url: HttpUrl
    api_key: str | None = None
    enabled: bool = True
    priority: int = 0


class SourcePatch(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    url: HttpUrl | None = None
    api_key: str | None = None
    enabled: bool | None = None
    priority: int | None = None


def serialize_source(source: StashSource) -> dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "url": source.url,
        "hasApiKey": bool(source.api_key),
        "enabled": source.enabled,
        "priority": source.priority,
        "createdAt": source.created_at,
        "updatedAt": source.updated_at,
    }


def serialize_sync_state(state: SyncState) -> dict[str, Any]:
    return {
        "sourceId": state.source_id,
        "entityKind": state.entity_kind,
        "lastFullSync": state.last_full_sync,
        "lastFullSyncActual": state.last_full_sync_actual,
        "lastIncrementalSync": state.last_incremental_sync,
        "lastIncrementalSyncActual": state.last_incremental_sync_actual,
        "lastSyncCount": state.last_sync_count,
        "lastSyncDurationMs": state.last_sync_duration_ms,
        "lastError": state.last_error,
        "totalEntities": state.total_entities,
    }


def serialize_page(page: QueryPage) -> dict[str, Any]:
    return {
        "items": page.items,
        "total": page.total,
        "page": page.page,
        "perPage": page.per_page,
    }


def register_routes(fastapi_app: FastAPI) -> None:
    async def _cache_not_ready(_: Request, __: Exception) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": "cache_not_ready"})

    async def _invalid_query(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=400, content={"error": "invalid_query", "detail": str(exc)}
        )

    async def _unknown_source(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=404, content={"error": "unknown_source", "detail": str(exc)}
        )

    fastapi_app.add_exception_handler(CacheNotReadyError, _cache_not_ready)
    fastapi_app.add_exception_handler(QueryValidationError, _invalid_query)
    fastapi_app.add_exception_handler(CompositeKeyError, _invalid_query)
    fastapi_app.add_exception_handler(UnknownSourceError, _unknown_source)

    def _resolve_kind(value: str) -> str:
        kind = kind_from_plural(value)
        if kind is None:
            raise HTTPException(status_code=404, detail=f"Unknown entity kind {value}")
        return kind

    def _require_ready() -> None:
        if not get_sync_engine(fastapi_app).is_ready():
            raise CacheNotReadyError()

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/cache/status")
    async def cache_status() -> dict[str, Any]:
        engine = get_sync_engine(fastapi_app)
        status = await engine.cache_status()
        return {
            "ready": status["ready"],
            "counts": status["counts"],
            "lastRefreshedAt": status["last_refreshed_at"],
            "syncing": status["syncing"],
        }

    @fastapi_app.post("/api/library/{kind}/query")
    async def query_library(
        kind: str,
        query: EntityQuery,
        user_id: int | None = Header(default=None, alias="X-User-Id"),
    ) -> dict[str, Any]:
        resolved = _resolve_kind(kind)
        _require_ready()
        page = await get_query_builder(fastapi_app).query(resolved, query, user_id=user_id)
        return serialize_page(page)

    @fastapi_app.get("/api/library/{kind}/search")
    async def search_library(
        kind: str,
        q: str = Query(default="", max_length=200),
        limit: int = Query(default=20, ge=1, le=100),
        source_id: list[str] | None = Query(default=None),
    ) -> dict[str, Any]:
        resolved = _resolve_kind(kind)
        _require_ready()
        items = await get_query_builder(fastapi_app).search(
            resolved, q, limit=limit, source_ids=source_id
        )
        return {"items": items, "total": len(items)}

    @fastapi_app.get("/api/library/{kind}/{ref}")
    async def get_entity(
        kind: str,
        ref: str,
        user_id: int | None = Header(default=None, alias="X-User-Id"),
    ) -> dict[str, Any]:
        resolved = _resolve_kind(kind)
        _require_ready()
        item = await get_query_builder(fastapi_app).get(resolved, ref, user_id=user_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"{resolved} {ref} not found")
        return item

    @fastapi_app.get("/api/library/{kind}/{ref}/{relation}")
    async def get_related(
        kind: str,
        ref: str,
        relation: str,
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=40, ge=1, le=MAX_PER_PAGE, alias="perPage"),
        user_id: int | None = Header(default=None, alias="X-User-Id"),
    ) -> dict[str, Any]:
        resolved = _resolve_kind(kind)
        _require_ready()
        result = await get_query_builder(fastapi_app).related(
            resolved,
            ref,
            relation,
            user_id=user_id,
            query=EntityQuery(page=page, per_page=per_page),
        )
        if result is None:
            raise HTTPException(status_code=404, detail=f"{resolved} {ref} not found")
        return serialize_page(result)

    @fastapi_app.get("/api/admin/sources")
    async def list_sources() -> dict[str, Any]:
        sources = await get_sync_engine(fastapi_app).list_sources()
        return {"sources": [serialize_source(source) for source in sources]}

    @fastapi_app.post("/api/admin/sources", status_code=201)
    async def create_source(payload: SourcePayload) -> dict[str, Any]:
        engine = get_sync_engine(fastapi_app)
        try:
            source = await engine.add_source(
                payload.name,
                str(payload.url),
                payload.api_key,
                enabled=payload.enabled,
                priority=payload.priority,
                source_id=payload.id,
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if source.enabled:
            engine.request_sync(source.id)
        return serialize_source(source)

    @fastapi_app.patch("/api/admin/sources/{source_id}")
    async def patch_source(source_id: str, payload: SourcePatch) -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        if "url" in changes and changes["url"] is not None:
            changes["url"] = str(changes["url"])
        source = await get_sync_engine(fastapi_app).update_source(source_id, **changes)
        return serialize_source(source)

    @fastapi_app.delete("/api/admin/sources/{source_id}")
    async def delete_source(source_id: str, purge: bool = True) -> dict[str, Any]:
        removed = await get_sync_engine(fastapi_app).remove_source(source_id, purge=purge)
        return {"removed": source_id, "purged": purge, "rows": removed}

    @fastapi_app.post("/api/admin/sources/{source_id}/sync", status_code=202)
    async def trigger_sync(
        source_id: str,
        mode: Literal["auto", "full", "incremental"] = "auto",
        kind: list[str] | None = Query(default=None),
    ) -> dict[str, Any]:
        engine = get_sync_engine(fastapi_app)
        source = await engine.get_source(source_id)
        if not source.enabled:
            raise HTTPException(status_code=409, detail=f"Source {source_id} is disabled")
        kinds = [_resolve_kind(value) for value in kind] if kind else None
        scheduled = engine.request_sync(source_id, mode, kinds)
        return {"sourceId": source_id, "mode": mode, "scheduled": scheduled}

    @fastapi_app.delete("/api/admin/sources/{source_id}/sync")
    async def cancel_sync(source_id: str) -> dict[str, Any]:
        engine = get_sync_engine(fastapi_app)
        await engine.get_source(source_id)
        cancelled = await engine.cancel_source(source_id)
        return {"sourceId": source_id, "cancelled": cancelled}

    @fastapi_app.get("/api/admin/sync-state")
    async def sync_state(source_id: str | None = None) -> dict[str, Any]:
        states = await get_sync_engine(fastapi_app).get_sync_states(source_id)
        return {"states": [serialize_sync_state(state) for state in states]}


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
