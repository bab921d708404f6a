from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.db_models import StashSource, SyncState
from app.errors import CompositeKeyError, QueryValidationError, UnknownSourceError
from app.filters import EntityQuery, QueryPage
from app.main import register_routes
from app.services.query_builder import QueryBuilder
from app.services.sync_engine import SyncEngine


class DummySyncEngine(SyncEngine):
    """SyncEngine stub that never touches a database or upstream."""

    def __init__(self, *, ready: bool = True) -> None:  # pragma: no cover - nothing to initialise
        # Deliberately skip super().__init__ to avoid touching external systems.
        self._ready = ready
        self._locks = {}
        self.sources: dict[str, StashSource] = {}
        self.requested: list[tuple[str, str, Any]] = []

    async def refresh_ready(self) -> bool:  # type: ignore[override]
        return self._ready

    async def cache_stats(self) -> dict[str, int]:  # type: ignore[override]
        return {"scene": 3}

    async def get_sync_states(self, source_id: str | None = None) -> list[SyncState]:  # type: ignore[override]
        return [
            SyncState(
                source_id="home",
                entity_kind="scene",
                last_full_sync=datetime(2024, 1, 1),
                last_full_sync_actual=datetime(2024, 1, 2),
                last_sync_count=3,
                total_entities=3,
            )
        ]

    async def list_sources(self, *, enabled_only: bool = False) -> list[StashSource]:  # type: ignore[override]
        return list(self.sources.values())

    async def get_source(self, source_id: str) -> StashSource:  # type: ignore[override]
        if source_id not in self.sources:
            raise UnknownSourceError(source_id)
        return self.sources[source_id]

    async def add_source(self, name, url, api_key=None, *, enabled=True, priority=0, source_id=None):  # type: ignore[override]
        identifier = source_id or name.lower()
        if identifier in self.sources:
            raise ValueError(f"Source {identifier} already exists")
        source = StashSource(
            id=identifier,
            name=name,
            url=url,
            api_key=api_key,
            enabled=enabled,
            priority=priority,
        )
        self.sources[identifier] = source
        return source

    async def remove_source(self, source_id: str, *, purge: bool = True) -> dict[str, int]:  # type: ignore[override]
        await self.get_source(source_id)
        del self.sources[source_id]
        return {"scene": 3} if purge else {}

    def request_sync(self, source_id, mode="auto", kinds=None) -> bool:  # type: ignore[override]
        self.requested.append((source_id, mode, kinds))
        return True


class DummyQueryBuilder(QueryBuilder):
    def __init__(self) -> None:  # pragma: no cover - nothing to initialise
        self.last_query: EntityQuery | None = None
        self.last_user: int | None = None

    async def query(self, kind, query=None, *, user_id=None) -> QueryPage:  # type: ignore[override]
        if query is not None and "bogus" in query.filters:
            raise QueryValidationError("Unknown filter field bogus for scene")
        self.last_query = query
        self.last_user = user_id
        return QueryPage(
            items=[{"id": "1", "source_id": "home", "ref": "1:home", "title": "One"}],
            total=1,
            page=query.page if query else 1,
            per_page=query.per_page if query else 40,
        )

    async def get(self, kind, ref, *, user_id=None):  # type: ignore[override]
        if ref == "42":
            raise CompositeKeyError('Expected composite key "id:sourceId", got "42"')
        if ref == "1:home":
            return {"id": "1", "source_id": "home", "ref": ref, "user_rating": None}
        return None

    async def related(self, kind, ref, relation, *, user_id=None, query=None):  # type: ignore[override]
        if ref != "1:home":
            return None
        return QueryPage(items=[], total=0, page=query.page, per_page=query.per_page)

    async def search(self, kind, q, *, limit=20, source_ids=None):  # type: ignore[override]
        return [{"id": "1", "source_id": "home", "ref": "1:home"}] if q else []


def build_app(*, ready: bool = True) -> tuple[FastAPI, DummySyncEngine, DummyQueryBuilder]:
    app = FastAPI()
    register_routes(app)
    engine = DummySyncEngine(ready=ready)
    builder = DummyQueryBuilder()
    app.state.sync_engine = engine
    app.state.query_builder = builder
    return app, engine, builder


def test_library_reads_return_503_until_cache_ready() -> None:
    app, _, _ = build_app(ready=False)

    with TestClient(app) as client:
        query = client.post("/api/library/scenes/query", json={})
        single = client.get("/api/library/scenes/1:home")
        status = client.get("/api/cache/status")

    assert query.status_code == 503
    assert query.json() == {"error": "cache_not_ready"}
    assert single.status_code == 503
    assert status.status_code == 200
    assert status.json()["ready"] is False


def test_query_returns_page_and_forwards_user() -> None:
    app, _, builder = build_app()

    with TestClient(app) as client:
        response = client.post(
            "/api/library/scenes/query",
            json={"filters": {"title": {"modifier": "INCLUDES", "value": "one"}}, "perPage": 5},
            headers={"X-User-Id": "7"},
        )

    assert response.status_code == 200
    assert response.json() == {
        "items": [{"id": "1", "source_id": "home", "ref": "1:home", "title": "One"}],
        "total": 1,
        "page": 1,
        "perPage": 5,
    }
    assert builder.last_user == 7
    assert builder.last_query is not None
    assert builder.last_query.filters["title"].modifier == "INCLUDES"


def test_invalid_query_maps_to_400() -> None:
    app, _, _ = build_app()

    with TestClient(app) as client:
        response = client.post(
            "/api/library/scene/query", json={"filters": {"bogus": {"value": 1}}}
        )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_query"


def test_unknown_kind_is_404() -> None:
    app, _, _ = build_app()

    with TestClient(app) as client:
        response = client.post("/api/library/markers/query", json={})

    assert response.status_code == 404


def test_single_entity_search_and_related_routes() -> None:
    app, _, _ = build_app()

    with TestClient(app) as client:
        found = client.get("/api/library/scenes/1:home")
        missing = client.get("/api/library/scenes/2:home")
        search = client.get("/api/library/scenes/search", params={"q": "one"})
        related = client.get("/api/library/scenes/1:home/performers", params={"perPage": 3})
        related_missing = client.get("/api/library/scenes/9:home/performers")

    assert found.status_code == 200
    assert found.json()["ref"] == "1:home"
    assert missing.status_code == 404
    assert search.json() == {"items": [{"id": "1", "source_id": "home", "ref": "1:home"}], "total": 1}
    assert related.status_code == 200
    assert related.json()["perPage"] == 3
    assert related_missing.status_code == 404


def test_source_admin_round_trip() -> None:
    app, engine, _ = build_app()

    with TestClient(app) as client:
        created = client.post(
            "/api/admin/sources",
            json={"id": "home", "name": "Home", "url": "http://stash.local/graphql", "api_key": "k"},
        )
        duplicate = client.post(
            "/api/admin/sources",
            json={"id": "home", "name": "Home", "url": "http://stash.local/graphql"},
        )
        listed = client.get("/api/admin/sources")
        sync = client.post("/api/admin/sources/home/sync", params={"mode": "full", "kind": ["scenes"]})
        unknown_sync = client.post("/api/admin/sources/nope/sync")
        removed = client.delete("/api/admin/sources/home")
        removed_again = client.delete("/api/admin/sources/home")

    assert created.status_code == 201
    assert created.json()["hasApiKey"] is True
    assert "api_key" not in created.json()
    assert duplicate.status_code == 409
    assert [source["id"] for source in listed.json()["sources"]] == ["home"]
    assert sync.status_code == 202
    assert sync.json() == {"sourceId": "home", "mode": "full", "scheduled": True}
    assert engine.requested[0] == ("home", "auto", None)
    assert engine.requested[-1] == ("home", "full", ["scene"])
    assert unknown_sync.status_code == 404
    assert unknown_sync.json()["error"] == "unknown_source"
    assert removed.json() == {"removed": "home", "purged": True, "rows": {"scene": 3}}
    assert removed_again.status_code == 404


def test_sync_state_is_serialised_in_camel_case() -> None:
    app, _, _ = build_app()

    with TestClient(app) as client:
        response = client.get("/api/admin/sync-state")

    state = response.json()["states"][0]
    assert state["sourceId"] == "home"
    assert state["entityKind"] == "scene"
    assert state["lastFullSync"] == "2024-01-01T00:00:00"
    assert state["totalEntities"] == 3


def test_ambiguous_bare_id_maps_to_400() -> None:
    app, _, _ = build_app()

    with TestClient(app) as client:
        response = client.get("/api/library/scenes/42")

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_query"
    assert "id:sourceId" in response.json()["detail"]


def test_sync_of_disabled_source_is_refused() -> None:
    app, engine, _ = build_app()

    with TestClient(app) as client:
        created = client.post(
            "/api/admin/sources",
            json={"id": "attic", "name": "Attic", "url": "http://attic.local/graphql", "enabled": False},
        )
        response = client.post("/api/admin/sources/attic/sync")

    assert created.status_code == 201
    assert response.status_code == 409
    assert engine.requested == []
