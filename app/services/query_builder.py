"""Read path: filtered, sorted and paginated queries over the replica."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    JSON,
    Select,
    String,
    Text,
    and_,
    exists,
    false,
    func,
    literal_column,
    not_,
    or_,
    select,
    text,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from .. import db_models
from ..entities import (
    EntityKindDefinition,
    OverlayDefinition,
    OverlayField,
    RelationDefinition,
    get_definition,
)
from ..errors import QueryValidationError
from ..filters import Criterion, EntityQuery, QueryPage, RefCriterion
from ..refs import ParsedRef, assert_ref, group_ids_by_source, make_ref, parse_ref
from ..utils import build_fts_query, escape_like, parse_timestamp
from .replica import ReplicaStore, serialize_row

logger = logging.getLogger(__name__)

HIERARCHY_MAX_DEPTH = 32


@dataclass(slots=True)
class _OverlayColumn:
    field: OverlayField
    value: ColumnElement[Any]


def _ref_condition(
    id_column: ColumnElement[Any],
    source_column: ColumnElement[Any],
    refs: Iterable[str],
) -> ColumnElement[bool]:
    """Match composite keys exactly and bare ids in any source."""

    parsed = [ref for ref in map(parse_ref, refs) if ref.id]
    bare = [ref.id for ref in parsed if ref.source_id is None]
    by_source = group_ids_by_source(
        [ref for ref in parsed if ref.source_id is not None],
        lambda ref: ref.source_id,
        lambda ref: ref.id,
        default_source_id="",
    )
    clauses: list[ColumnElement[bool]] = [
        and_(source_column == source_id, id_column.in_(ids))
        for source_id, ids in by_source.items()
    ]
    if bare:
        clauses.append(id_column.in_(bare))
    if not clauses:
        return false()
    return or_(*clauses)


class QueryBuilder:
    """Builds and runs replica queries joined with per-user overlays."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        replica: ReplicaStore | None = None,
    ):
        self._session_factory = session_factory
        self._replica = replica or ReplicaStore()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def query(
        self,
        kind: str,
        query: EntityQuery | None = None,
        *,
        user_id: int | None = None,
    ) -> QueryPage:
        """Return one page of ``kind`` matching ``query`` for ``user_id``."""

        definition = self._definition(kind)
        query = query or EntityQuery()
        async with self._session_factory() as session:
            return await self._run(session, definition, query, user_id=user_id)

    async def get(
        self, kind: str, ref: str, *, user_id: int | None = None
    ) -> dict[str, Any] | None:
        """Return a single live entity with overlay fields, or ``None``.

        A bare id is accepted only while one source holds it; otherwise
        :class:`~app.errors.CompositeKeyError` asks for the full key.
        """

        definition = self._definition(kind)
        async with self._session_factory() as session:
            resolved = await self._resolve_ref(session, definition, ref)
            page = await self._run(
                session,
                definition,
                EntityQuery(ids=RefCriterion(value=[resolved]), per_page=1),
                user_id=user_id,
            )
        return page.items[0] if page.items else None

    async def related(
        self,
        kind: str,
        ref: str,
        relation: str,
        *,
        user_id: int | None = None,
        query: EntityQuery | None = None,
    ) -> QueryPage | None:
        """Return live entities reachable from ``ref`` through ``relation``.

        ``None`` means the owning entity does not exist or is deleted.
        """

        definition = self._definition(kind)
        spec = definition.relation(relation)
        if spec is None:
            raise QueryValidationError(f"Unknown relation {relation} for {kind}")
        target = get_definition(spec.target_kind)
        query = query or EntityQuery()

        async with self._session_factory() as session:
            owner = await self._load_owner(session, definition, ref)
            if owner is None:
                return None
            condition = self._traversal_condition(definition, spec, target, owner)
            return await self._run(
                session, target, query, user_id=user_id, extra=[condition]
            )

    async def search(
        self,
        kind: str,
        q: str,
        *,
        limit: int = 20,
        source_ids: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        definition = self._definition(kind)
        async with self._session_factory() as session:
            return await self._replica.search(
                session, definition.kind, q, limit=limit, source_ids=source_ids
            )

    # ------------------------------------------------------------------
    # Statement assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _definition(kind: str) -> EntityKindDefinition:
        try:
            return get_definition(kind)
        except KeyError as exc:
            raise QueryValidationError(f"Unknown entity kind {kind}") from exc

    async def _run(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        query: EntityQuery,
        *,
        user_id: int | None,
        extra: Sequence[ColumnElement[bool]] = (),
    ) -> QueryPage:
        table = definition.table
        overlays, from_clause = self._overlay_join(definition, user_id)
        conditions = list(extra)
        conditions.extend(await self._conditions(session, definition, query, overlays))
        order_by = self._order_by(definition, query, overlays)

        text_modes = [True, False] if query.q and definition.full_text else [False]
        for use_fts in text_modes:
            where = list(conditions)
            if query.q:
                where.append(self._text_condition(definition, query.q, use_fts=use_fts))
            base: Select[Any] = (
                select(
                    table,
                    *(overlay.value.label(name) for name, overlay in overlays.items()),
                )
                .select_from(from_clause)
                .where(*where)
            )
            try:
                total = (
                    await session.execute(
                        select(func.count()).select_from(base.subquery())
                    )
                ).scalar_one()
                result = await session.execute(
                    base.order_by(*order_by).limit(query.per_page).offset(query.offset)
                )
            except OperationalError as exc:
                if not use_fts:
                    raise
                logger.warning(
                    "Full-text query %r failed on %s (%s); falling back to LIKE",
                    query.q,
                    definition.kind,
                    exc.orig if exc.orig is not None else exc,
                )
                continue
            items = [self._serialize(definition, overlays, row) for row in result.mappings()]
            return QueryPage(
                items=items, total=int(total), page=query.page, per_page=query.per_page
            )
        raise AssertionError("unreachable")  # pragma: no cover

    def _overlay_join(
        self, definition: EntityKindDefinition, user_id: int | None
    ) -> tuple[dict[str, _OverlayColumn], Any]:
        table = definition.table
        from_clause: Any = table
        columns: dict[str, _OverlayColumn] = {}
        for index, overlay in enumerate(definition.overlays):
            alias = overlay.model.__table__.alias(f"overlay_{index}")  # type: ignore[attr-defined]
            # A missing user matches no overlay row, so every field takes its default.
            from_clause = from_clause.outerjoin(
                alias,
                and_(
                    alias.c.entity_id == table.c.id,
                    alias.c.source_id == table.c.source_id,
                    alias.c.user_id == user_id if user_id is not None else false(),
                ),
            )
            for overlay_field in overlay.fields:
                column = alias.c[overlay_field.column]
                value: ColumnElement[Any] = (
                    func.coalesce(column, overlay_field.default)
                    if overlay_field.default is not None
                    else column
                )
                columns[overlay_field.name] = _OverlayColumn(field=overlay_field, value=value)
        return columns, from_clause

    async def _conditions(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        query: EntityQuery,
        overlays: dict[str, _OverlayColumn],
    ) -> list[ColumnElement[bool]]:
        table = definition.table
        conditions: list[ColumnElement[bool]] = []
        if not query.include_deleted:
            conditions.append(table.c.deleted_at.is_(None))
        if query.source_ids:
            conditions.append(table.c.source_id.in_(query.source_ids))

        if query.ids is not None and query.ids.value:
            if query.ids.modifier == "INCLUDES_ALL":
                raise QueryValidationError("ids does not support INCLUDES_ALL")
            match = _ref_condition(table.c.id, table.c.source_id, query.ids.value)
            conditions.append(not_(match) if query.ids.modifier == "EXCLUDES" else match)

        for name, criterion in query.filters.items():
            conditions.append(self._filter_condition(definition, name, criterion))

        for name, criterion in query.relations.items():
            spec = definition.relation(name)
            if spec is None:
                raise QueryValidationError(
                    f"Unknown relation {name} for {definition.kind}"
                )
            condition = await self._relation_condition(
                session,
                definition,
                spec,
                criterion,
                live_only=not query.include_deleted,
            )
            if condition is not None:
                conditions.append(condition)

        rating_overlay = self._rating_overlay(definition)
        if query.favorite is not None:
            if rating_overlay is None:
                raise QueryValidationError(f"{definition.kind} has no favorites")
            favorite = overlays["user_favorite"].value
            conditions.append(favorite.is_(True) if query.favorite else favorite.is_(False))
        if query.rating is not None:
            if rating_overlay is None:
                raise QueryValidationError(f"{definition.kind} has no ratings")
            rating = overlays["user_rating"].value
            conditions.append(self._compare(rating, Integer(), query.rating, "rating"))
        return conditions

    @staticmethod
    def _rating_overlay(definition: EntityKindDefinition) -> OverlayDefinition | None:
        for overlay in definition.overlays:
            if any(field.name == "user_rating" for field in overlay.fields):
                return overlay
        return None

    def _resolve_column(self, definition: EntityKindDefinition, name: str) -> str:
        column_name = definition.sort_aliases.get(name, name)
        if column_name not in definition.table.c or column_name in ("source_id",):
            raise QueryValidationError(f"Unknown filter field {name} for {definition.kind}")
        return column_name

    def _filter_condition(
        self, definition: EntityKindDefinition, name: str, criterion: Criterion
    ) -> ColumnElement[bool]:
        column_name = self._resolve_column(definition, name)
        column = definition.table.c[column_name]
        if isinstance(column.type, JSON):
            if criterion.modifier in ("IS_NULL", "NOT_NULL"):
                empty = or_(column.is_(None), definition.text_column(column_name) == "[]")
                return empty if criterion.modifier == "IS_NULL" else not_(empty)
            if criterion.modifier not in ("INCLUDES", "EXCLUDES") or not isinstance(
                criterion.value, str
            ):
                raise QueryValidationError(
                    f"{name} only supports text INCLUDES, EXCLUDES and null checks"
                )
            pattern = f"%{escape_like(criterion.value)}%"
            match = definition.text_column(column_name).ilike(pattern, escape="\\")
            return match if criterion.modifier == "INCLUDES" else or_(not_(match), column.is_(None))
        return self._compare(column, column.type, criterion, name)

    def _compare(
        self,
        column: ColumnElement[Any],
        column_type: Any,
        criterion: Criterion,
        name: str,
    ) -> ColumnElement[bool]:
        modifier = criterion.modifier
        is_text = isinstance(column_type, (String, Text))
        if modifier in ("IS_NULL", "NOT_NULL"):
            missing = or_(column.is_(None), column == "") if is_text else column.is_(None)
            return missing if modifier == "IS_NULL" else not_(missing)

        if modifier in ("INCLUDES", "EXCLUDES"):
            if isinstance(criterion.value, (list, tuple)):
                values = [self._coerce(column_type, entry, name) for entry in criterion.value]
                match = column.in_(values)
            elif is_text:
                pattern = f"%{escape_like(str(criterion.value))}%"
                match = column.ilike(pattern, escape="\\")
            else:
                match = column == self._coerce(column_type, criterion.value, name)
            if modifier == "INCLUDES":
                return match
            return or_(not_(match), column.is_(None))

        value = self._coerce(column_type, criterion.value, name)
        if modifier == "EQUALS":
            return column == value
        if modifier == "NOT_EQUALS":
            return or_(column != value, column.is_(None))
        if modifier == "GREATER_THAN":
            return column > value
        if modifier == "LESS_THAN":
            return column < value
        upper = self._coerce(column_type, criterion.value2, name)
        if modifier == "BETWEEN":
            return column.between(value, upper)
        return or_(column < value, column > upper)

    @staticmethod
    def _coerce(column_type: Any, value: Any, name: str) -> Any:
        try:
            if isinstance(column_type, Boolean):
                if isinstance(value, str):
                    lowered = value.strip().lower()
                    if lowered not in ("true", "false", "1", "0"):
                        raise ValueError(value)
                    return lowered in ("true", "1")
                return bool(value)
            if isinstance(column_type, Integer):
                if isinstance(value, bool):
                    raise ValueError(value)
                number = float(value)
                if not number.is_integer():
                    raise ValueError(value)
                return int(number)
            if isinstance(column_type, Float):
                if isinstance(value, bool):
                    raise ValueError(value)
                return float(value)
            if isinstance(column_type, DateTime):
                parsed = parse_timestamp(value)
                if parsed is None:
                    raise ValueError(value)
                return parsed
        except (TypeError, ValueError) as exc:
            raise QueryValidationError(f"Invalid value {value!r} for {name}") from exc
        if isinstance(value, (dict, list)):
            raise QueryValidationError(f"Invalid value {value!r} for {name}")
        return str(value)

    async def _relation_condition(
        self,
        session: AsyncSession,
        definition: EntityKindDefinition,
        spec: RelationDefinition,
        criterion: RefCriterion,
        *,
        live_only: bool = True,
    ) -> ColumnElement[bool] | None:
        if not criterion.value:
            return None
        expand = spec.hierarchical and criterion.depth != 0
        groups: list[list[str]] = []
        for value in criterion.value:
            refs = [value]
            if expand:
                refs.extend(
                    await self._descendants(
                        session, spec.target_kind, value, criterion.depth, live_only=live_only
                    )
                )
            groups.append(refs)

        if criterion.modifier == "INCLUDES_ALL":
            return and_(
                *(self._related_to(definition, spec, refs, live_only=live_only) for refs in groups)
            )
        merged = [ref for refs in groups for ref in refs]
        match = self._related_to(definition, spec, merged, live_only=live_only)
        return not_(match) if criterion.modifier == "EXCLUDES" else match

    def _related_to(
        self,
        definition: EntityKindDefinition,
        spec: RelationDefinition,
        refs: Sequence[str],
        *,
        live_only: bool = True,
    ) -> ColumnElement[bool]:
        table = definition.table
        target = get_definition(spec.target_kind).table.alias("related_target")
        if spec.via == "column":
            assert spec.local_column is not None
            match = _ref_condition(table.c[spec.local_column], table.c.source_id, refs)
            if not live_only:
                return match
            return and_(
                match,
                exists(
                    select(literal_column("1"))
                    .select_from(target)
                    .where(
                        target.c.id == table.c[spec.local_column],
                        target.c.source_id == table.c.source_id,
                        target.c.deleted_at.is_(None),
                    )
                ),
            )
        if spec.via == "junction":
            assert spec.table is not None and spec.local_column and spec.remote_column
            edges = spec.table
            conditions = [
                edges.c[spec.local_column] == table.c.id,
                edges.c.source_id == table.c.source_id,
                _ref_condition(edges.c[spec.remote_column], edges.c.source_id, refs),
            ]
            source: Any = edges
            if live_only:
                # Edges left behind by a soft-deleted target are not followed.
                source = edges.join(
                    target,
                    and_(
                        target.c.id == edges.c[spec.remote_column],
                        target.c.source_id == edges.c.source_id,
                    ),
                )
                conditions.append(target.c.deleted_at.is_(None))
            return exists(select(literal_column("1")).select_from(source).where(*conditions))
        assert spec.remote_column is not None
        conditions = [
            target.c[spec.remote_column] == table.c.id,
            target.c.source_id == table.c.source_id,
            _ref_condition(target.c.id, target.c.source_id, refs),
        ]
        if live_only:
            conditions.append(target.c.deleted_at.is_(None))
        return exists(select(literal_column("1")).select_from(target).where(*conditions))

    async def _descendants(
        self,
        session: AsyncSession,
        kind: str,
        ref: str,
        depth: int,
        *,
        live_only: bool = True,
    ) -> list[str]:
        """Return composite keys below ``ref`` in the tag or studio tree.

        With ``live_only`` the walk neither returns nor passes through
        soft-deleted nodes.
        """

        extra: list[ColumnElement[bool]] = []
        if kind == "tag":
            edges = db_models.tag_parents
            child_id, parent_id, source_id = edges.c.tag_id, edges.c.parent_id, edges.c.source_id
            source: Any = edges
            if live_only:
                tags = db_models.CachedTag.__table__
                source = edges.join(
                    tags, and_(tags.c.id == child_id, tags.c.source_id == source_id)
                )
                extra.append(tags.c.deleted_at.is_(None))
        elif kind == "studio":
            studios = db_models.CachedStudio.__table__
            child_id, parent_id, source_id = studios.c.id, studios.c.parent_id, studios.c.source_id
            source = studios
            if live_only:
                extra.append(studios.c.deleted_at.is_(None))
        else:
            return []

        limit = HIERARCHY_MAX_DEPTH if depth < 0 else min(depth, HIERARCHY_MAX_DEPTH)
        seen: set[str] = {ref}
        found: list[str] = []
        frontier = [ref]
        for _ in range(limit):
            if not frontier:
                break
            result = await session.execute(
                select(child_id, source_id)
                .select_from(source)
                .where(_ref_condition(parent_id, source_id, frontier), *extra)
            )
            frontier = []
            for row in result:
                child = make_ref(row[0], row[1])
                if child in seen:
                    continue
                seen.add(child)
                found.append(child)
                frontier.append(child)
        return found

    def _text_condition(
        self, definition: EntityKindDefinition, q: str, *, use_fts: bool
    ) -> ColumnElement[bool]:
        table = definition.table
        if use_fts and definition.full_text is not None:
            match = build_fts_query(q)
            if match is not None:
                index = definition.full_text
                return literal_column(f"{table.name}.rowid").in_(
                    select(index.table.c.rowid).where(
                        text(f"{index.name} MATCH :fts_match").bindparams(fts_match=match)
                    )
                )
        pattern = f"%{escape_like(q.strip())}%"
        return or_(
            *(
                definition.text_column(column).ilike(pattern, escape="\\")
                for column in definition.like_columns
            )
        )

    def _order_by(
        self,
        definition: EntityKindDefinition,
        query: EntityQuery,
        overlays: dict[str, _OverlayColumn],
    ) -> list[ColumnElement[Any]]:
        table = definition.table
        if query.sort is None:
            sort = definition.default_sort
            direction = query.direction or definition.default_direction
        else:
            sort = query.sort
            direction = query.direction or "ASC"

        if sort in overlays:
            overlay = overlays[sort]
            if not overlay.field.sortable:
                raise QueryValidationError(f"Cannot sort {definition.kind} by {sort}")
            expression: ColumnElement[Any] = overlay.value
        else:
            column_name = definition.sort_aliases.get(sort, sort)
            if column_name not in table.c or definition.is_list_column(column_name):
                raise QueryValidationError(f"Cannot sort {definition.kind} by {sort}")
            expression = table.c[column_name]

        ordered = expression.desc() if direction == "DESC" else expression.asc()
        # NULLs sort last in either direction; id and source break ties.
        return [expression.is_(None), ordered, table.c.id.asc(), table.c.source_id.asc()]

    @staticmethod
    def _serialize(
        definition: EntityKindDefinition,
        overlays: dict[str, _OverlayColumn],
        row: Any,
    ) -> dict[str, Any]:
        item = serialize_row(row, definition)
        for name, overlay in overlays.items():
            value = row[name]
            item[name] = overlay.field.default if value is None else value
        return item

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _resolve_ref(
        self, session: AsyncSession, definition: EntityKindDefinition, ref: str
    ) -> str:
        """Qualify a bare id with the one source that holds it live."""

        parsed = parse_ref(ref)
        if parsed.source_id is not None or not parsed.id:
            return ref
        table = definition.table
        result = await session.execute(
            select(table.c.source_id)
            .where(table.c.id == parsed.id, table.c.deleted_at.is_(None))
            .limit(2)
        )
        sources = result.scalars().all()
        if len(sources) > 1:
            # Ambiguous across sources: refuse instead of picking one.
            return assert_ref(ref)
        return make_ref(parsed.id, sources[0]) if sources else ref

    async def _load_owner(
        self, session: AsyncSession, definition: EntityKindDefinition, ref: str
    ) -> dict[str, Any] | None:
        table = definition.table
        resolved = await self._resolve_ref(session, definition, ref)
        result = await session.execute(
            select(table).where(
                _ref_condition(table.c.id, table.c.source_id, [resolved]),
                table.c.deleted_at.is_(None),
            )
        )
        row = result.mappings().first()
        return dict(row) if row is not None else None

    def _traversal_condition(
        self,
        definition: EntityKindDefinition,
        spec: RelationDefinition,
        target: EntityKindDefinition,
        owner: dict[str, Any],
    ) -> ColumnElement[bool]:
        target_table = target.table
        owner_ref = ParsedRef(str(owner["id"]), str(owner["source_id"]))
        same_source = target_table.c.source_id == owner_ref.source_id
        if spec.via == "column":
            assert spec.local_column is not None
            value = owner.get(spec.local_column)
            if value is None:
                return false()
            return and_(same_source, target_table.c.id == value)
        if spec.via == "reverse":
            assert spec.remote_column is not None
            return and_(same_source, target_table.c[spec.remote_column] == owner_ref.id)
        assert spec.table is not None and spec.local_column and spec.remote_column
        edges = spec.table
        return and_(
            same_source,
            target_table.c.id.in_(
                select(edges.c[spec.remote_column]).where(
                    edges.c[spec.local_column] == owner_ref.id,
                    edges.c.source_id == owner_ref.source_id,
                )
            ),
        )
