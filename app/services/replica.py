"""Write and lookup helpers for the local replica tables."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Table, and_, delete, func, or_, select, text, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import db_models
from ..entities import ENTITY_DEFINITIONS, EntityKindDefinition, get_definition
from ..models import UpstreamEntity
from ..refs import make_ref
from ..utils import build_fts_query, escape_like, utcnow

logger = logging.getLogger(__name__)

# Keeps ``IN (...)`` lists well below SQLite's bound parameter limit.
ID_CHUNK_SIZE = 500

EDGE_TABLES: tuple[Table, ...] = (
    db_models.scene_performers,
    db_models.scene_tags,
    db_models.scene_groups,
    db_models.scene_galleries,
    db_models.image_performers,
    db_models.image_tags,
    db_models.image_galleries,
    db_models.gallery_performers,
    db_models.gallery_tags,
    db_models.performer_tags,
    db_models.studio_tags,
    db_models.group_tags,
    db_models.tag_parents,
)


def _chunks(values: Sequence[str], size: int = ID_CHUNK_SIZE) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def serialize_row(row: Mapping[str, Any], definition: EntityKindDefinition) -> dict[str, Any]:
    """Return a cached row as a plain dict carrying its composite ``ref``."""

    payload = {name: row[name] for name in definition.column_names() if name in row}
    payload["ref"] = make_ref(row["id"], row["source_id"])
    return payload


class ReplicaStore:
    """Stateless helpers operating on a caller-owned session."""

    async def upsert_entities(
        self,
        session: AsyncSession,
        kind: str,
        source_id: str,
        entities: Sequence[UpstreamEntity],
        *,
        synced_at: datetime | None = None,
    ) -> int:
        """Insert or overwrite ``entities`` and replace their outgoing edges.

        Rows that were soft-deleted come back to life in place. The caller
        commits; edges and rows land in the same transaction.
        """

        if not entities:
            return 0
        definition = get_definition(kind)
        table = definition.table
        stamp = synced_at or utcnow()

        latest: dict[str, UpstreamEntity] = {}
        for entity in entities:
            latest[entity.id] = entity
        rows = [
            {**entity.to_row(source_id), "synced_at": stamp, "deleted_at": None}
            for entity in latest.values()
        ]

        statement = sqlite_insert(table)
        statement = statement.on_conflict_do_update(
            index_elements=[table.c.id, table.c.source_id],
            set_={
                column.name: statement.excluded[column.name]
                for column in table.columns
                if column.name not in ("id", "source_id")
            },
        )
        await session.execute(statement, rows)
        await self._replace_edges(session, definition, source_id, list(latest.values()))
        return len(rows)

    async def _replace_edges(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        source_id: str,
        entities: list[UpstreamEntity],
    ) -> None:
        if not definition.edge_tables:
            return
        owner_column = definition.owner_column
        owner_ids = [entity.id for entity in entities]
        per_table: dict[str, list[dict[str, Any]]] = {
            edge_table.name: [] for edge_table in definition.edge_tables
        }
        for entity in entities:
            for table_name, edge_rows in entity.edges().items():
                if table_name not in per_table:
                    continue
                per_table[table_name].extend(
                    {**edge, owner_column: entity.id, "source_id": source_id}
                    for edge in edge_rows
                )

        for edge_table in definition.edge_tables:
            for chunk in _chunks(owner_ids):
                await session.execute(
                    delete(edge_table).where(
                        edge_table.c.source_id == source_id,
                        edge_table.c[owner_column].in_(chunk),
                    )
                )
            edge_rows = per_table[edge_table.name]
            if edge_rows:
                await session.execute(
                    sqlite_insert(edge_table).on_conflict_do_nothing(), edge_rows
                )

    async def mark_missing_deleted(
        self,
        session: AsyncSession,
        kind: str,
        source_id: str,
        before: datetime,
        *,
        deleted_at: datetime | None = None,
    ) -> int:
        """Soft-delete live rows of ``source_id`` not written since ``before``."""

        table = get_definition(kind).table
        result = await session.execute(
            update(table)
            .where(
                table.c.source_id == source_id,
                table.c.deleted_at.is_(None),
                table.c.synced_at < before,
            )
            .values(deleted_at=deleted_at or utcnow())
        )
        return result.rowcount or 0

    async def purge_source(self, session: AsyncSession, source_id: str) -> dict[str, int]:
        """Delete every cached row and edge belonging to ``source_id``."""

        removed: dict[str, int] = {}
        for kind, definition in ENTITY_DEFINITIONS.items():
            table = definition.table
            result = await session.execute(delete(table).where(table.c.source_id == source_id))
            removed[kind] = result.rowcount or 0
        for edge_table in EDGE_TABLES:
            await session.execute(
                delete(edge_table).where(edge_table.c.source_id == source_id)
            )
        await session.execute(
            delete(db_models.SyncState).where(db_models.SyncState.source_id == source_id)
        )
        return removed

    async def count(
        self,
        session: AsyncSession,
        kind: str,
        *,
        source_id: str | None = None,
        include_deleted: bool = False,
    ) -> int:
        table = get_definition(kind).table
        statement = select(func.count()).select_from(table)
        if source_id is not None:
            statement = statement.where(table.c.source_id == source_id)
        if not include_deleted:
            statement = statement.where(table.c.deleted_at.is_(None))
        result = await session.execute(statement)
        return int(result.scalar_one())

    async def search(
        self,
        session: AsyncSession,
        kind: str,
        query: str,
        *,
        limit: int = 20,
        source_ids: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Return live rows matching ``query``, best matches first."""

        definition = get_definition(kind)
        if not (query or "").strip():
            return []
        if definition.full_text is not None:
            match = build_fts_query(query)
            if match is not None:
                try:
                    return await self._search_fts(
                        session, definition, match, limit=limit, source_ids=source_ids
                    )
                except OperationalError as exc:
                    logger.warning(
                        "Full-text search on %s failed (%s); falling back to LIKE",
                        definition.full_text.name,
                        exc.orig if exc.orig is not None else exc,
                    )
        return await self._search_like(
            session, definition, query, limit=limit, source_ids=source_ids
        )

    async def _search_fts(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        match: str,
        *,
        limit: int,
        source_ids: Sequence[str] | None,
    ) -> list[dict[str, Any]]:
        index = definition.full_text
        assert index is not None
        table = definition.table
        fts = index.table
        statement = (
            select(table)
            .join(fts, and_(fts.c.id == table.c.id, fts.c.source_id == table.c.source_id))
            .where(text(f"{index.name} MATCH :match").bindparams(match=match))
            .where(table.c.deleted_at.is_(None))
            .order_by(fts.c.rank, table.c.id, table.c.source_id)
            .limit(limit)
        )
        if source_ids:
            statement = statement.where(table.c.source_id.in_(list(source_ids)))
        result = await session.execute(statement)
        return [serialize_row(row, definition) for row in result.mappings()]

    async def _search_like(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        query: str,
        *,
        limit: int,
        source_ids: Sequence[str] | None,
    ) -> list[dict[str, Any]]:
        table = definition.table
        pattern = f"%{escape_like(query.strip())}%"
        conditions = [
            definition.text_column(column).ilike(pattern, escape="\\")
            for column in definition.like_columns
        ]
        statement = (
            select(table)
            .where(or_(*conditions))
            .where(table.c.deleted_at.is_(None))
            .order_by(table.c[definition.label_column], table.c.id, table.c.source_id)
            .limit(limit)
        )
        if source_ids:
            statement = statement.where(table.c.source_id.in_(list(source_ids)))
        result = await session.execute(statement)
        return [serialize_row(row, definition) for row in result.mappings()]
