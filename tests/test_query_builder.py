"""Read-path behaviour: filters, relations, overlays and ordering."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pytest
from sqlalchemy import update

from app import db_models
from app.database import Database
from app.entities import get_definition
from app.errors import CompositeKeyError, QueryValidationError
from app.filters import EntityQuery
from app.models import PAYLOAD_MODELS
from app.services.query_builder import QueryBuilder
from app.services.replica import ReplicaStore


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


async def build_database(tmp_path) -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'replica.db'}")
    await database.create_all()
    return database


async def seed(
    database: Database, kind: str, source_id: str, payloads: list[dict[str, Any]]
) -> None:
    model = PAYLOAD_MODELS[kind]
    async with database.session() as session:
        await ReplicaStore().upsert_entities(
            session, kind, source_id, [model.model_validate(payload) for payload in payloads]
        )
        await session.commit()


async def add_overlays(database: Database, *rows: Any) -> None:
    async with database.session() as session:
        session.add_all(rows)
        await session.commit()


async def soft_delete(database: Database, kind: str, source_id: str, *raw_ids: str) -> None:
    table = get_definition(kind).table
    async with database.session() as session:
        await session.execute(
            update(table)
            .where(table.c.source_id == source_id, table.c.id.in_(raw_ids))
            .values(deleted_at=datetime(2024, 6, 1))
        )
        await session.commit()


def refs(page) -> list[str]:
    return [item["ref"] for item in page.items]


def query(**payload: Any) -> EntityQuery:
    return EntityQuery.model_validate(payload)


@pytest.mark.anyio("asyncio")
async def test_overlays_default_when_user_has_no_row(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "1", "title": "One", "date": "2024-01-01"},
                {"id": "2", "title": "Two", "date": "2024-03-01"},
                {"id": "3", "title": "Three"},
            ],
        )
        await add_overlays(
            database,
            db_models.SceneRating(user_id=1, entity_id="1", source_id="A", rating=90, favorite=True),
            db_models.SceneRating(user_id=1, entity_id="3", source_id="A", rating=40),
            db_models.WatchHistory(
                user_id=1, entity_id="1", source_id="A", play_count=3, resume_time=12.5
            ),
        )
        builder = QueryBuilder(database.session_factory)

        anonymous = await builder.query("scene")
        for item in anonymous.items:
            assert item["user_rating"] is None
            assert item["user_favorite"] is False
            assert item["user_play_count"] == 0
            assert item["resume_time"] is None

        other_user = await builder.get("scene", "1:A", user_id=2)
        assert other_user is not None
        assert other_user["user_rating"] is None
        assert other_user["user_play_count"] == 0

        mine = await builder.get("scene", "1:A", user_id=1)
        assert mine is not None
        assert mine["user_rating"] == 90
        assert mine["user_favorite"] is True
        assert mine["user_play_count"] == 3
        assert mine["resume_time"] == 12.5
        assert mine["title"] == "One"

        favorites = await builder.query("scene", query(favorite=True), user_id=1)
        assert refs(favorites) == ["1:A"]
        not_favorites = await builder.query("scene", query(favorite=False), user_id=1)
        assert sorted(refs(not_favorites)) == ["2:A", "3:A"]

        rated = await builder.query(
            "scene", query(rating={"modifier": "GREATER_THAN", "value": 50}), user_id=1
        )
        assert refs(rated) == ["1:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_nulls_sort_last_in_both_directions(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "1", "date": "2024-01-01"},
                {"id": "2", "date": "2024-03-01"},
                {"id": "3"},
            ],
        )
        await add_overlays(
            database,
            db_models.SceneRating(user_id=1, entity_id="1", source_id="A", rating=90),
            db_models.SceneRating(user_id=1, entity_id="3", source_id="A", rating=40),
        )
        builder = QueryBuilder(database.session_factory)

        assert refs(await builder.query("scene")) == ["2:A", "1:A", "3:A"]
        assert refs(await builder.query("scene", query(sort="date", direction="asc"))) == [
            "1:A",
            "2:A",
            "3:A",
        ]
        by_rating = await builder.query(
            "scene", query(sort="user_rating", direction="DESC"), user_id=1
        )
        assert refs(by_rating) == ["1:A", "3:A", "2:A"]
        by_rating_asc = await builder.query("scene", query(sort="user_rating"), user_id=1)
        assert refs(by_rating_asc) == ["3:A", "1:A", "2:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_ties_break_on_id_then_source(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(database, "scene", "B", [{"id": "5", "date": "2024-01-01"}, {"id": "4", "date": "2024-01-01"}])
        await seed(database, "scene", "A", [{"id": "5", "date": "2024-01-01"}])
        builder = QueryBuilder(database.session_factory)

        page = await builder.query("scene")
        assert refs(page) == ["4:B", "5:A", "5:B"]
        restricted = await builder.query("scene", query(source_ids=["B"]))
        assert refs(restricted) == ["4:B", "5:B"]

        second_page = await builder.query("scene", query(page=2, perPage=2))
        assert refs(second_page) == ["5:B"]
        assert second_page.total == 3
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_column_filters(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "1", "title": "Sunrise Walk", "rating100": 80, "organized": True, "code": "ABC-1"},
                {"id": "2", "title": "Night Drive", "rating100": 40, "code": ""},
                {"id": "3", "title": "Sunset", "rating100": 60},
            ],
        )
        builder = QueryBuilder(database.session_factory)

        async def matching(**filters: Any) -> list[str]:
            page = await builder.query("scene", query(filters=filters))
            return sorted(refs(page))

        assert await matching(title={"modifier": "INCLUDES", "value": "sun"}) == ["1:A", "3:A"]
        assert await matching(title={"modifier": "EXCLUDES", "value": "sun"}) == ["2:A"]
        assert await matching(rating100={"modifier": "BETWEEN", "value": 50, "value2": 90}) == [
            "1:A",
            "3:A",
        ]
        assert await matching(rating100={"modifier": "NOT_BETWEEN", "value": 50, "value2": 90}) == [
            "2:A"
        ]
        assert await matching(organized={"value": "true"}) == ["1:A"]
        assert await matching(code={"modifier": "IS_NULL"}) == ["2:A", "3:A"]
        assert await matching(code={"modifier": "NOT_NULL"}) == ["1:A"]
        assert await matching(id={"modifier": "INCLUDES", "value": ["1", "3"]}) == ["1:A", "3:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_invalid_queries_raise_validation_errors(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(database, "performer", "A", [{"id": "1", "name": "Ada", "alias_list": ["Ace"]}])
        builder = QueryBuilder(database.session_factory)

        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(filters={"nope": {"value": 1}}))
        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(filters={"rating100": {"value": "high"}}))
        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(sort="nope"))
        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(sort="resume_time"))
        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(relations={"friends": {"value": ["1:A"]}}))
        with pytest.raises(QueryValidationError):
            await builder.query("scene", query(ids={"value": ["1:A"], "modifier": "INCLUDES_ALL"}))
        with pytest.raises(QueryValidationError):
            await builder.query("performer", query(sort="alias_list"))
        with pytest.raises(QueryValidationError):
            await builder.query("marker")

        aliased = await builder.query(
            "performer", query(filters={"alias_list": {"modifier": "INCLUDES", "value": "ace"}})
        )
        assert refs(aliased) == ["1:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_relation_filters_expand_tag_hierarchy(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "tag",
            "A",
            [
                {"id": "1", "name": "Outdoor"},
                {"id": "2", "name": "Beach", "parents": [{"id": "1"}]},
                {"id": "3", "name": "Sand", "parents": [{"id": "2"}]},
                {"id": "4", "name": "Solo"},
            ],
        )
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "10", "tags": [{"id": "1"}]},
                {"id": "11", "tags": [{"id": "3"}]},
                {"id": "12", "tags": [{"id": "2"}, {"id": "4"}]},
                {"id": "13"},
            ],
        )
        await seed(database, "tag", "B", [{"id": "2", "name": "Beach"}])
        await seed(database, "scene", "B", [{"id": "12", "tags": [{"id": "2"}]}])
        builder = QueryBuilder(database.session_factory)

        async def tagged(**criterion: Any) -> list[str]:
            page = await builder.query("scene", query(relations={"tags": criterion}))
            return sorted(refs(page))

        assert await tagged(value=["2:A"]) == ["12:A"]
        assert await tagged(value=["2:A"], depth=-1) == ["11:A", "12:A"]
        assert await tagged(value=["1:A"], depth=1) == ["10:A", "12:A"]
        assert await tagged(value=["2"]) == ["12:A", "12:B"]
        assert await tagged(value=["2:A", "4:A"], modifier="INCLUDES_ALL") == ["12:A"]
        assert await tagged(value=["1:A", "4:A"], modifier="INCLUDES_ALL", depth=-1) == ["12:A"]
        assert await tagged(value=["1:A"], modifier="EXCLUDES", depth=-1) == ["12:B", "13:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_relation_filters_expand_studio_hierarchy(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "studio",
            "A",
            [
                {"id": "1", "name": "Network"},
                {"id": "2", "name": "Label", "parent_studio": {"id": "1"}},
            ],
        )
        await seed(database, "scene", "A", [{"id": "10", "studio": {"id": "2"}}, {"id": "11"}])
        builder = QueryBuilder(database.session_factory)

        direct = await builder.query("scene", query(relations={"studio": {"value": "1:A"}}))
        assert refs(direct) == []
        nested = await builder.query(
            "scene", query(relations={"studio": {"value": "1:A", "depth": -1}})
        )
        assert refs(nested) == ["10:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_related_traverses_edges_columns_and_reverse_links(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "studio",
            "A",
            [
                {"id": "1", "name": "Network"},
                {"id": "2", "name": "Label", "parent_studio": {"id": "1"}},
            ],
        )
        await seed(database, "performer", "A", [{"id": "7", "name": "Ada"}])
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "10", "title": "First", "studio": {"id": "2"}, "performers": [{"id": "7"}]},
                {"id": "11", "title": "Second", "performers": [{"id": "7"}]},
            ],
        )
        await seed(database, "scene", "B", [{"id": "12", "performers": [{"id": "7"}]}])
        builder = QueryBuilder(database.session_factory)

        scenes = await builder.related("performer", "7:A", "scenes")
        assert scenes is not None
        assert sorted(refs(scenes)) == ["10:A", "11:A"]

        studio = await builder.related("scene", "10:A", "studio")
        assert studio is not None and refs(studio) == ["2:A"]
        no_studio = await builder.related("scene", "11:A", "studio")
        assert no_studio is not None and no_studio.total == 0

        children = await builder.related("studio", "1:A", "children")
        assert children is not None and refs(children) == ["2:A"]
        performers = await builder.related("scene", "12:B", "performers")
        assert performers is not None and performers.items == []

        assert await builder.related("performer", "99:A", "scenes") is None
        with pytest.raises(QueryValidationError):
            await builder.related("performer", "7:A", "friends")
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_relation_filters_ignore_deleted_targets(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "tag",
            "A",
            [
                {"id": "1", "name": "Outdoor"},
                {"id": "2", "name": "Beach", "parents": [{"id": "1"}]},
                {"id": "3", "name": "Sand", "parents": [{"id": "2"}]},
            ],
        )
        await seed(database, "studio", "A", [{"id": "5", "name": "Gone"}])
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "10", "tags": [{"id": "1"}]},
                {"id": "11", "tags": [{"id": "2"}]},
                {"id": "12", "tags": [{"id": "3"}]},
                {"id": "13", "studio": {"id": "5"}},
            ],
        )
        await soft_delete(database, "tag", "A", "2")
        await soft_delete(database, "studio", "A", "5")
        builder = QueryBuilder(database.session_factory)

        async def matching(**payload: Any) -> list[str]:
            return sorted(refs(await builder.query("scene", query(**payload))))

        assert await matching(relations={"tags": {"value": ["2:A"]}}) == []
        assert await matching(relations={"tags": {"value": ["1:A"], "depth": -1}}) == ["10:A"]
        assert await matching(relations={"studio": {"value": ["5:A"]}}) == []
        assert await matching(
            relations={"tags": {"value": ["2:A"], "modifier": "EXCLUDES"}}
        ) == ["10:A", "11:A", "12:A", "13:A"]

        assert await matching(
            relations={"tags": {"value": ["1:A"], "depth": -1}}, include_deleted=True
        ) == ["10:A", "11:A", "12:A"]
        assert await matching(
            relations={"studio": {"value": ["5:A"]}}, include_deleted=True
        ) == ["13:A"]
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_bare_id_held_by_several_sources_is_rejected(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(database, "performer", "A", [{"id": "7", "name": "Ada"}])
        await seed(
            database,
            "scene",
            "A",
            [{"id": "42", "title": "From A", "performers": [{"id": "7"}]}, {"id": "43"}],
        )
        await seed(database, "scene", "B", [{"id": "42", "title": "From B"}])
        builder = QueryBuilder(database.session_factory)

        with pytest.raises(CompositeKeyError, match="id:sourceId"):
            await builder.get("scene", "42")
        with pytest.raises(CompositeKeyError):
            await builder.related("scene", "42", "performers")

        only_a = await builder.get("scene", "43")
        assert only_a is not None and only_a["ref"] == "43:A"
        performers = await builder.related("scene", "42:A", "performers")
        assert performers is not None and refs(performers) == ["7:A"]

        await soft_delete(database, "scene", "B", "42")
        unique_again = await builder.get("scene", "42")
        assert unique_again is not None and unique_again["title"] == "From A"
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_text_search_and_id_filters(tmp_path) -> None:
    database = await build_database(tmp_path)
    try:
        await seed(
            database,
            "scene",
            "A",
            [
                {"id": "1", "title": "Sunrise Walk"},
                {"id": "2", "title": "Night Drive", "details": "city lights"},
            ],
        )
        await seed(database, "scene", "B", [{"id": "1", "title": "Sunrise Again"}])
        builder = QueryBuilder(database.session_factory)

        assert sorted(refs(await builder.query("scene", query(q="sunr")))) == ["1:A", "1:B"]
        assert refs(await builder.query("scene", query(q="lights"))) == ["2:A"]
        assert (await builder.query("scene", query(q="   "))).total == 3

        by_ids = await builder.query("scene", query(ids={"value": ["1:B", "2:A"]}))
        assert sorted(refs(by_ids)) == ["1:B", "2:A"]
        excluded = await builder.query(
            "scene", query(ids={"value": ["1:A"], "modifier": "EXCLUDES"})
        )
        assert sorted(refs(excluded)) == ["1:B", "2:A"]

        results = await builder.search("scene", "sunrise", source_ids=["B"])
        assert [item["ref"] for item in results] == ["1:B"]
        assert await builder.search("scene", "") == []
        groups = await builder.search("group", "anything")
        assert groups == []
    finally:
        await database.dispose()
