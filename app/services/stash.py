"""Client for the GraphQL API exposed by Stash-style catalog servers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import SourceResponseError, SourceUnavailableError
from ..models import PAYLOAD_MODELS, EntityPage
from ..utils import format_timestamp

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceConnection:
    """Where and how to reach one upstream server."""

    id: str
    url: str
    api_key: str | None = None


@dataclass(frozen=True, slots=True)
class KindQuery:
    operation: str
    result_field: str
    filter_argument: str
    filter_type: str
    selection: str


_ID = "{ id }"

KIND_QUERIES: dict[str, KindQuery] = {
    "scene": KindQuery(
        operation="findScenes",
        result_field="scenes",
        filter_argument="scene_filter",
        filter_type="SceneFilterType",
        selection=f"""
            id title code details date rating100 organized o_counter
            play_count play_duration created_at updated_at
            studio {_ID}
            files {{ path size duration bit_rate frame_rate width height video_codec audio_codec }}
            paths {{ screenshot preview sprite vtt chapters_vtt stream caption }}
            performers {_ID}
            tags {_ID}
            groups {{ group {_ID} scene_index }}
            galleries {_ID}
        """,
    ),
    "performer": KindQuery(
        operation="findPerformers",
        result_field="performers",
        filter_argument="performer_filter",
        filter_type="PerformerFilterType",
        selection=f"""
            id name disambiguation gender birthdate death_date country ethnicity
            hair_color eye_color height_cm weight measurements tattoos piercings
            career_length details alias_list urls favorite rating100
            scene_count image_count gallery_count group_count o_counter
            image_path created_at updated_at
            tags {_ID}
        """,
    ),
    "studio": KindQuery(
        operation="findStudios",
        result_field="studios",
        filter_argument="studio_filter",
        filter_type="StudioFilterType",
        selection=f"""
            id name details urls favorite rating100 scene_count image_count
            gallery_count performer_count group_count image_path
            created_at updated_at
            parent_studio {_ID}
            tags {_ID}
        """,
    ),
    "tag": KindQuery(
        operation="findTags",
        result_field="tags",
        filter_argument="tag_filter",
        filter_type="TagFilterType",
        selection=f"""
            id name description aliases favorite image_path scene_count
            image_count gallery_count performer_count studio_count group_count
            scene_marker_count created_at updated_at
            parents {_ID}
        """,
    ),
    "group": KindQuery(
        operation="findGroups",
        result_field="groups",
        filter_argument="group_filter",
        filter_type="GroupFilterType",
        selection=f"""
            id name date rating100 duration director synopsis urls
            front_image_path back_image_path scene_count performer_count
            created_at updated_at
            studio {_ID}
            tags {_ID}
        """,
    ),
    "gallery": KindQuery(
        operation="findGalleries",
        result_field="galleries",
        filter_argument="gallery_filter",
        filter_type="GalleryFilterType",
        selection=f"""
            id title code date details photographer urls rating100 organized
            image_count created_at updated_at
            folder {{ path }}
            paths {{ cover }}
            studio {_ID}
            performers {_ID}
            tags {_ID}
        """,
    ),
    "image": KindQuery(
        operation="findImages",
        result_field="images",
        filter_argument="image_filter",
        filter_type="ImageFilterType",
        selection=f"""
            id title code date details photographer urls rating100 o_counter
            organized created_at updated_at
            visual_files {{ ... on ImageFile {{ path size width height }} }}
            paths {{ thumbnail preview image }}
            studio {_ID}
            performers {_ID}
            tags {_ID}
            galleries {_ID}
        """,
    ),
}


def build_list_query(kind: str) -> str:
    spec = KIND_QUERIES[kind]
    return (
        f"query List($filter: FindFilterType, $entity_filter: {spec.filter_type}) {{ "
        f"{spec.operation}(filter: $filter, {spec.filter_argument}: $entity_filter) "
        f"{{ count {spec.result_field} {{ {' '.join(spec.selection.split())} }} }} }}"
    )


class StashClient:
    """Thin wrapper around one upstream server's GraphQL endpoint."""

    def __init__(
        self,
        source: SourceConnection,
        settings: Settings,
        http_client: httpx.AsyncClient,
    ):
        self._source = source
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.source_max_retries

    @property
    def source_id(self) -> str:
        return self._source.id

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"{self._settings.app_name} (stashmirror)",
        }
        if self._source.api_key:
            headers["ApiKey"] = self._source.api_key
        return headers

    async def execute(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        kind: str | None = None,
    ) -> dict[str, Any]:
        """POST a GraphQL document and return its ``data`` object."""

        payload = {"query": query, "variables": variables or {}}
        attempt = 0
        while True:
            try:
                response = await self._client.post(
                    self._source.url,
                    json=payload,
                    headers=self._headers(),
                    timeout=self._settings.source_timeout_seconds,
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    logger.info(
                        "Transient error talking to %s (%s). Retrying in %.1fs",
                        self.source_id,
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceUnavailableError(
                    self.source_id, f"{exc.__class__.__name__}: {exc}"
                ) from exc

            if response.status_code == 429 or 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = min(2 ** (attempt - 1), 5) + (0.1 * attempt)
                    retry_after = response.headers.get("retry-after")
                    if retry_after and retry_after.isdigit():
                        backoff = max(backoff, float(retry_after))
                    logger.info(
                        "%s answered HTTP %s. Retrying in %.1fs",
                        self.source_id,
                        response.status_code,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise SourceUnavailableError(
                    self.source_id, f"HTTP {response.status_code}"
                )
            if response.status_code in (401, 403):
                raise SourceUnavailableError(
                    self.source_id, f"credentials rejected (HTTP {response.status_code})"
                )
            if response.status_code >= 400:
                raise SourceResponseError(
                    self.source_id, f"HTTP {response.status_code}", kind=kind
                )
            break

        try:
            body = response.json()
        except ValueError as exc:
            raise SourceResponseError(
                self.source_id, "response is not JSON", kind=kind
            ) from exc
        if not isinstance(body, dict):
            raise SourceResponseError(
                self.source_id, "unexpected response structure", kind=kind
            )
        errors = body.get("errors")
        if errors:
            messages = [
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in errors
            ]
            raise SourceResponseError(self.source_id, "; ".join(messages), kind=kind)
        data = body.get("data")
        if not isinstance(data, dict):
            raise SourceResponseError(self.source_id, "response has no data", kind=kind)
        return data

    async def _fetch_page(
        self,
        kind: str,
        *,
        page: int,
        per_page: int,
        sort: str,
        entity_filter: dict[str, Any] | None = None,
    ) -> EntityPage:
        spec = KIND_QUERIES[kind]
        variables: dict[str, Any] = {
            "filter": {
                "page": page,
                "per_page": per_page,
                "sort": sort,
                "direction": "ASC",
            },
            "entity_filter": entity_filter or {},
        }
        data = await self.execute(build_list_query(kind), variables, kind=kind)
        envelope = data.get(spec.operation)
        if not isinstance(envelope, dict):
            raise SourceResponseError(
                self.source_id, f"missing {spec.operation} result", kind=kind
            )
        raw_items = envelope.get(spec.result_field) or []
        model = PAYLOAD_MODELS[kind]
        try:
            items = [model.model_validate(entry) for entry in raw_items]
        except ValidationError as exc:
            raise SourceResponseError(self.source_id, str(exc), kind=kind) from exc
        count = envelope.get("count")
        return EntityPage(items=items, count=count if isinstance(count, int) else None)

    async def list_entities(self, kind: str, page: int, per_page: int) -> EntityPage:
        """Return one page of every entity of ``kind`` ordered by id.

        Edits during a pass do not move rows between pages, so offset paging
        observes every entity exactly once.
        """

        return await self._fetch_page(kind, page=page, per_page=per_page, sort="id")

    async def list_updated_since(
        self, kind: str, since: datetime, page: int, per_page: int
    ) -> EntityPage:
        """Return one page of entities updated after ``since``.

        Upstream timestamps have second precision, so the filter starts one
        second early; re-applying an unchanged entity is harmless.
        """

        entity_filter = {
            "updated_at": {
                "value": format_timestamp(since - timedelta(seconds=1)),
                "modifier": "GREATER_THAN",
            }
        }
        return await self._fetch_page(
            kind,
            page=page,
            per_page=per_page,
            sort="updated_at",
            entity_filter=entity_filter,
        )

    async def ping(self) -> str | None:
        """Return the upstream version string, raising when unreachable."""

        data = await self.execute("query { version { version } }")
        version = data.get("version") or {}
        return version.get("version") if isinstance(version, dict) else None
