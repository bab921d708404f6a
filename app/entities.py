"""Registry describing every mirrored entity kind.

Each :class:`EntityKindDefinition` ties a kind to its cached table, the edge
tables it owns, the relations it can be filtered or traversed by and the
per-user overlay tables joined onto it at read time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import JSON, Table, Text, cast
from sqlalchemy.sql.elements import ColumnElement

from . import db_models
from .search_index import FULL_TEXT_INDEXES, FullTextIndex

ENTITY_KINDS: tuple[str, ...] = (
    "scene",
    "performer",
    "studio",
    "tag",
    "group",
    "gallery",
    "image",
)

# Referenced kinds sync first so most edges land on rows that already exist.
SYNC_ORDER: tuple[str, ...] = (
    "tag",
    "studio",
    "performer",
    "group",
    "gallery",
    "scene",
    "image",
)

RelationVia = Literal["junction", "column", "reverse"]


@dataclass(frozen=True)
class RelationDefinition:
    """How one kind reaches related entities of ``target_kind``.

    ``junction`` relations go through an edge table where ``local_column``
    holds the owner id and ``remote_column`` the target id. ``column``
    relations read the target id from ``local_column`` on the owner row.
    ``reverse`` relations find targets whose ``remote_column`` holds the
    owner id.
    """

    name: str
    target_kind: str
    via: RelationVia
    local_column: str | None = None
    remote_column: str | None = None
    table: Table | None = None
    hierarchical: bool = False


@dataclass(frozen=True)
class OverlayField:
    name: str
    column: str
    default: Any
    sortable: bool = True


@dataclass(frozen=True)
class OverlayDefinition:
    """A per-user table left-joined onto a kind on (entity, source, user)."""

    model: type
    fields: tuple[OverlayField, ...]


@dataclass(frozen=True)
class EntityKindDefinition:
    kind: str
    model: type[db_models.CachedEntity]
    plural: str
    label_column: str
    default_sort: str
    default_direction: Literal["ASC", "DESC"]
    edge_tables: tuple[Table, ...] = ()
    relations: tuple[RelationDefinition, ...] = ()
    overlays: tuple[OverlayDefinition, ...] = ()
    like_columns: tuple[str, ...] = ()
    full_text: FullTextIndex | None = None
    sort_aliases: dict[str, str] = field(default_factory=dict)

    @property
    def table(self) -> Table:
        return self.model.__table__  # type: ignore[attr-defined]

    @property
    def owner_column(self) -> str:
        """Column naming this kind in the edge tables it owns."""

        return f"{self.kind}_id"

    def relation(self, name: str) -> RelationDefinition | None:
        for relation in self.relations:
            if relation.name == name:
                return relation
        return None

    def overlay_fields(self) -> dict[str, tuple[OverlayDefinition, OverlayField]]:
        return {
            overlay_field.name: (overlay, overlay_field)
            for overlay in self.overlays
            for overlay_field in overlay.fields
        }

    def column_names(self) -> list[str]:
        return [column.name for column in self.table.columns]

    def is_list_column(self, name: str) -> bool:
        column = self.table.columns.get(name)
        return column is not None and isinstance(column.type, JSON)

    def text_column(self, name: str) -> ColumnElement[Any]:
        """Return ``name`` as a text expression; JSON lists compare as their text."""

        column = self.table.c[name]
        if isinstance(column.type, JSON):
            return cast(column, Text)
        return column


def _junction(
    name: str,
    target_kind: str,
    table: Table,
    local_column: str,
    remote_column: str,
    *,
    hierarchical: bool = False,
) -> RelationDefinition:
    return RelationDefinition(
        name=name,
        target_kind=target_kind,
        via="junction",
        local_column=local_column,
        remote_column=remote_column,
        table=table,
        hierarchical=hierarchical,
    )


def _column(
    name: str, target_kind: str, local_column: str, *, hierarchical: bool = False
) -> RelationDefinition:
    return RelationDefinition(
        name=name,
        target_kind=target_kind,
        via="column",
        local_column=local_column,
        hierarchical=hierarchical,
    )


def _reverse(name: str, target_kind: str, remote_column: str) -> RelationDefinition:
    return RelationDefinition(
        name=name, target_kind=target_kind, via="reverse", remote_column=remote_column
    )


def _rating(model: type) -> OverlayDefinition:
    return OverlayDefinition(
        model=model,
        fields=(
            OverlayField("user_rating", "rating", None),
            OverlayField("user_favorite", "favorite", False),
        ),
    )


def _engagement(model: type) -> OverlayDefinition:
    return OverlayDefinition(
        model=model,
        fields=(
            OverlayField("user_o_counter", "o_counter", 0),
            OverlayField("user_play_count", "play_count", 0),
            OverlayField("last_played_at", "last_played_at", None),
            OverlayField("last_o_at", "last_o_at", None),
        ),
    )


WATCH_HISTORY = OverlayDefinition(
    model=db_models.WatchHistory,
    fields=(
        OverlayField("user_play_count", "play_count", 0),
        OverlayField("user_play_duration", "play_duration", 0.0),
        OverlayField("resume_time", "resume_time", None, sortable=False),
        OverlayField("last_played_at", "last_played_at", None),
        OverlayField("user_o_count", "o_count", 0),
    ),
)

IMAGE_VIEWS = OverlayDefinition(
    model=db_models.ImageViewHistory,
    fields=(
        OverlayField("view_count", "view_count", 0),
        OverlayField("user_o_count", "o_count", 0),
        OverlayField("last_viewed_at", "last_viewed_at", None),
    ),
)

TIMESTAMP_ALIASES = {
    "created_at": "source_created_at",
    "updated_at": "source_updated_at",
}


ENTITY_DEFINITIONS: dict[str, EntityKindDefinition] = {
    "scene": EntityKindDefinition(
        kind="scene",
        model=db_models.CachedScene,
        plural="scenes",
        label_column="title",
        default_sort="date",
        default_direction="DESC",
        edge_tables=(
            db_models.scene_performers,
            db_models.scene_tags,
            db_models.scene_groups,
            db_models.scene_galleries,
        ),
        relations=(
            _junction("performers", "performer", db_models.scene_performers, "scene_id", "performer_id"),
            _junction("tags", "tag", db_models.scene_tags, "scene_id", "tag_id", hierarchical=True),
            _junction("groups", "group", db_models.scene_groups, "scene_id", "group_id"),
            _junction("galleries", "gallery", db_models.scene_galleries, "scene_id", "gallery_id"),
            _column("studio", "studio", "studio_id", hierarchical=True),
        ),
        overlays=(_rating(db_models.SceneRating), WATCH_HISTORY),
        like_columns=("title", "details", "code", "file_path"),
        full_text=FULL_TEXT_INDEXES["scene"],
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "performer": EntityKindDefinition(
        kind="performer",
        model=db_models.CachedPerformer,
        plural="performers",
        label_column="name",
        default_sort="name",
        default_direction="ASC",
        edge_tables=(db_models.performer_tags,),
        relations=(
            _junction("tags", "tag", db_models.performer_tags, "performer_id", "tag_id", hierarchical=True),
            _junction("scenes", "scene", db_models.scene_performers, "performer_id", "scene_id"),
            _junction("galleries", "gallery", db_models.gallery_performers, "performer_id", "gallery_id"),
            _junction("images", "image", db_models.image_performers, "performer_id", "image_id"),
        ),
        overlays=(
            _rating(db_models.PerformerRating),
            _engagement(db_models.UserPerformerStats),
        ),
        like_columns=("name", "disambiguation", "alias_list"),
        full_text=FULL_TEXT_INDEXES["performer"],
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "studio": EntityKindDefinition(
        kind="studio",
        model=db_models.CachedStudio,
        plural="studios",
        label_column="name",
        default_sort="name",
        default_direction="ASC",
        edge_tables=(db_models.studio_tags,),
        relations=(
            _junction("tags", "tag", db_models.studio_tags, "studio_id", "tag_id", hierarchical=True),
            _column("parent", "studio", "parent_id", hierarchical=True),
            _reverse("children", "studio", "parent_id"),
            _reverse("scenes", "scene", "studio_id"),
            _reverse("groups", "group", "studio_id"),
            _reverse("galleries", "gallery", "studio_id"),
            _reverse("images", "image", "studio_id"),
        ),
        overlays=(_rating(db_models.StudioRating), _engagement(db_models.UserStudioStats)),
        like_columns=("name",),
        full_text=FULL_TEXT_INDEXES["studio"],
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "tag": EntityKindDefinition(
        kind="tag",
        model=db_models.CachedTag,
        plural="tags",
        label_column="name",
        default_sort="name",
        default_direction="ASC",
        edge_tables=(db_models.tag_parents,),
        relations=(
            _junction("parents", "tag", db_models.tag_parents, "tag_id", "parent_id", hierarchical=True),
            _junction("children", "tag", db_models.tag_parents, "parent_id", "tag_id"),
            _junction("scenes", "scene", db_models.scene_tags, "tag_id", "scene_id"),
            _junction("performers", "performer", db_models.performer_tags, "tag_id", "performer_id"),
            _junction("studios", "studio", db_models.studio_tags, "tag_id", "studio_id"),
            _junction("groups", "group", db_models.group_tags, "tag_id", "group_id"),
            _junction("galleries", "gallery", db_models.gallery_tags, "tag_id", "gallery_id"),
            _junction("images", "image", db_models.image_tags, "tag_id", "image_id"),
        ),
        overlays=(_rating(db_models.TagRating), _engagement(db_models.UserTagStats)),
        like_columns=("name", "aliases"),
        full_text=FULL_TEXT_INDEXES["tag"],
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "group": EntityKindDefinition(
        kind="group",
        model=db_models.CachedGroup,
        plural="groups",
        label_column="name",
        default_sort="name",
        default_direction="ASC",
        edge_tables=(db_models.group_tags,),
        relations=(
            _junction("tags", "tag", db_models.group_tags, "group_id", "tag_id", hierarchical=True),
            _junction("scenes", "scene", db_models.scene_groups, "group_id", "scene_id"),
            _column("studio", "studio", "studio_id", hierarchical=True),
        ),
        overlays=(_rating(db_models.GroupRating),),
        like_columns=("name", "director", "synopsis"),
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "gallery": EntityKindDefinition(
        kind="gallery",
        model=db_models.CachedGallery,
        plural="galleries",
        label_column="title",
        default_sort="date",
        default_direction="DESC",
        edge_tables=(db_models.gallery_performers, db_models.gallery_tags),
        relations=(
            _junction("performers", "performer", db_models.gallery_performers, "gallery_id", "performer_id"),
            _junction("tags", "tag", db_models.gallery_tags, "gallery_id", "tag_id", hierarchical=True),
            _junction("scenes", "scene", db_models.scene_galleries, "gallery_id", "scene_id"),
            _junction("images", "image", db_models.image_galleries, "gallery_id", "image_id"),
            _column("studio", "studio", "studio_id", hierarchical=True),
        ),
        overlays=(_rating(db_models.GalleryRating),),
        like_columns=("title", "details", "folder_path"),
        sort_aliases=TIMESTAMP_ALIASES,
    ),
    "image": EntityKindDefinition(
        kind="image",
        model=db_models.CachedImage,
        plural="images",
        label_column="title",
        default_sort="date",
        default_direction="DESC",
        edge_tables=(
            db_models.image_performers,
            db_models.image_tags,
            db_models.image_galleries,
        ),
        relations=(
            _junction("performers", "performer", db_models.image_performers, "image_id", "performer_id"),
            _junction("tags", "tag", db_models.image_tags, "image_id", "tag_id", hierarchical=True),
            _junction("galleries", "gallery", db_models.image_galleries, "image_id", "gallery_id"),
            _column("studio", "studio", "studio_id", hierarchical=True),
        ),
        overlays=(_rating(db_models.ImageRating), IMAGE_VIEWS),
        like_columns=("title", "details", "file_path"),
        sort_aliases=TIMESTAMP_ALIASES,
    ),
}


def get_definition(kind: str) -> EntityKindDefinition:
    """Return the registry entry for ``kind`` or raise ``KeyError``."""

    try:
        return ENTITY_DEFINITIONS[kind]
    except KeyError:
        raise KeyError(f"Unknown entity kind {kind}") from None


def kind_from_plural(value: str) -> str | None:
    """Resolve a URL segment such as ``scenes`` or ``scene`` to a kind."""

    if value in ENTITY_DEFINITIONS:
        return value
    for definition in ENTITY_DEFINITIONS.values():
        if definition.plural == value:
            return definition.kind
    return None
