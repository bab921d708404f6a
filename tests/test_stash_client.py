"""Tests for the GraphQL client talking to upstream catalog servers."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.errors import SourceResponseError, SourceUnavailableError
from app.models import StashImage, StashScene, UpstreamEntity
from app.services.stash import SourceConnection, StashClient, build_list_query


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_settings(**overrides: Any) -> Settings:
    """Return a settings object with defaults suitable for tests."""

    base: dict[str, Any] = {"SOURCE_MAX_RETRIES": 0, "SYNC_ON_STARTUP": False}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def build_client(
    handler, *, api_key: str | None = "secret-key", **overrides: Any
) -> tuple[StashClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    connection = SourceConnection(id="home", url="http://stash.local/graphql", api_key=api_key)
    return StashClient(connection, build_settings(**overrides), http_client), http_client


def scene_payload(raw_id: int, **fields: Any) -> dict[str, Any]:
    payload = {
        "id": str(raw_id),
        "title": f"Scene {raw_id}",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": f"2024-01-0{raw_id}T08:00:00+02:00",
        "studio": {"id": "3"},
        "files": [{"path": f"/media/{raw_id}.mp4", "duration": 61.5, "width": 1920}],
        "paths": {"screenshot": f"/scene/{raw_id}/screenshot"},
        "performers": [{"id": 10}, {"id": 10}, {"id": 11}],
        "tags": [],
        "groups": [{"group": {"id": "7"}, "scene_index": 2}],
        "galleries": [],
    }
    payload.update(fields)
    return payload


@pytest.mark.anyio("asyncio")
async def test_list_entities_posts_graphql_and_parses_page() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "findScenes": {
                        "count": 3,
                        "scenes": [scene_payload(1), scene_payload(2)],
                    }
                }
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        page = await client.list_entities("scene", 1, 2)

    assert page.count == 3
    assert not page.is_last_page(1, 2)
    assert page.is_last_page(2, 2)
    assert [item.id for item in page.items] == ["1", "2"]

    first = page.items[0]
    assert isinstance(first, StashScene)
    assert first.updated_at == datetime(2024, 1, 1, 6, 0)
    row = first.to_row("home")
    assert row["studio_id"] == "3"
    assert row["file_path"] == "/media/1.mp4"
    assert row["duration"] == 61.5
    assert first.edges()["scene_performers"] == [
        {"performer_id": "10"},
        {"performer_id": "11"},
    ]
    assert first.edges()["scene_groups"] == [{"group_id": "7", "scene_index": 2}]

    assert len(requests) == 1
    request = requests[0]
    assert request.method == "POST"
    assert request.headers["ApiKey"] == "secret-key"
    body = json.loads(request.content)
    assert body["query"] == build_list_query("scene")
    assert body["variables"]["filter"] == {
        "page": 1,
        "per_page": 2,
        "sort": "id",
        "direction": "ASC",
    }



def test_base_entity_row_carries_only_shared_fields() -> None:
    entity = UpstreamEntity.model_validate({"id": 5, "updated_at": "2024-01-02T03:04:05Z"})

    assert entity.columns() == {}
    assert entity.edges() == {}
    assert entity.to_row("home") == {
        "id": "5",
        "source_id": "home",
        "source_created_at": None,
        "source_updated_at": datetime(2024, 1, 2, 3, 4, 5),
    }

@pytest.mark.anyio("asyncio")
async def test_list_updated_since_filters_on_updated_at() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"findImages": {"count": 0, "images": []}}})

    client, http_client = build_client(handler, api_key=None)
    async with http_client:
        page = await client.list_updated_since("image", datetime(2024, 5, 1, 12, 0, 0), 1, 50)

    assert page.items == []
    assert bodies[0]["variables"]["entity_filter"] == {
        "updated_at": {"value": "2024-05-01T11:59:59Z", "modifier": "GREATER_THAN"}
    }
    assert bodies[0]["variables"]["filter"]["sort"] == "updated_at"


@pytest.mark.anyio("asyncio")
async def test_missing_api_key_sends_no_header() -> None:
    headers: list[httpx.Headers] = []

    def handler(request: httpx.Request) -> httpx.Response:
        headers.append(request.headers)
        return httpx.Response(200, json={"data": {"version": {"version": "v0.27.2"}}})

    client, http_client = build_client(handler, api_key=None)
    async with http_client:
        assert await client.ping() == "v0.27.2"

    assert "ApiKey" not in headers[0]


@pytest.mark.anyio("asyncio")
async def test_image_visual_files_are_flattened() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "findImages": {
                        "count": 1,
                        "images": [
                            {
                                "id": "5",
                                "visual_files": [{"path": "/a.jpg", "width": 800, "height": 600}],
                                "galleries": [{"id": "9"}],
                            }
                        ],
                    }
                }
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        page = await client.list_entities("image", 1, 10)

    image = page.items[0]
    assert isinstance(image, StashImage)
    row = image.to_row("home")
    assert (row["file_path"], row["width"], row["height"]) == ("/a.jpg", 800, 600)
    assert image.edges()["image_galleries"] == [{"gallery_id": "9"}]


@pytest.mark.anyio("asyncio")
async def test_graphql_errors_raise_response_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"errors": [{"message": "unknown field"}], "data": None}
        )

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(SourceResponseError, match="unknown field"):
            await client.list_entities("tag", 1, 10)


@pytest.mark.anyio("asyncio")
async def test_invalid_entity_payload_raises_response_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": {"findPerformers": {"count": 1, "performers": [{"id": "1"}]}}},
        )

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(SourceResponseError) as excinfo:
            await client.list_entities("performer", 1, 10)

    assert excinfo.value.kind == "performer"
    assert excinfo.value.source_id == "home"


@pytest.mark.anyio("asyncio")
async def test_server_errors_raise_unavailable_without_retries() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, text="busy")

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(SourceUnavailableError):
            await client.list_entities("scene", 1, 10)

    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_transient_failure_is_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"data": {"findTags": {"count": 0, "tags": []}}})

    client, http_client = build_client(handler, SOURCE_MAX_RETRIES=2)
    async with http_client:
        page = await client.list_entities("tag", 1, 10)

    assert page.items == []
    assert calls == 2


@pytest.mark.anyio("asyncio")
async def test_rejected_credentials_raise_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="unauthorized")

    client, http_client = build_client(handler)
    async with http_client:
        with pytest.raises(SourceUnavailableError, match="credentials rejected"):
            await client.ping()
