"""SQLAlchemy ORM models backing the replica, sync bookkeeping and overlays."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from .database import Base
from .utils import utcnow


# --------------------------------------------------------------------------
# Source configuration and sync bookkeeping
# --------------------------------------------------------------------------


class StashSource(Base):
    """An upstream catalog server the replica mirrors."""

    __tablename__ = "stash_sources"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), default="Default")
    url: Mapped[str] = mapped_column(String(512))
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class SyncState(Base):
    """Outcome of the latest sync attempts for one source and entity kind."""

    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint("source_id", "entity_kind", name="uq_sync_state_source_kind"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(64), index=True)
    entity_kind: Mapped[str] = mapped_column(String(16))
    # Cursor values are upstream ``updated_at`` watermarks; the ``*_actual``
    # columns record local wall-clock completion time for display.
    last_full_sync: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_full_sync_actual: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_incremental_sync: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_incremental_sync_actual: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_sync_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_sync_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_entities: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def cursor(self) -> datetime | None:
        """Return the watermark incremental syncs should resume from."""

        candidates = [
            value
            for value in (self.last_incremental_sync, self.last_full_sync)
            if value is not None
        ]
        return max(candidates) if candidates else None


# --------------------------------------------------------------------------
# Cached entities
# --------------------------------------------------------------------------


class CachedEntity:
    """Columns shared by every mirrored entity table."""

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_created_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    source_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True, index=True
    )


class CachedScene(CachedEntity, Base):
    __tablename__ = "cached_scenes"

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String(120), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    organized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    o_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    play_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    play_duration: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    file_bit_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_frame_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    file_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_video_codec: Mapped[str | None] = mapped_column(String(32), nullable=True)
    file_audio_codec: Mapped[str | None] = mapped_column(String(32), nullable=True)
    path_screenshot: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_sprite: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_vtt: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_chapters_vtt: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_stream: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_caption: Mapped[str | None] = mapped_column(Text, nullable=True)


class CachedPerformer(CachedEntity, Base):
    __tablename__ = "cached_performers"

    name: Mapped[str] = mapped_column(String(255), index=True)
    disambiguation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    birthdate: Mapped[str | None] = mapped_column(String(10), nullable=True)
    death_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ethnicity: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hair_color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    eye_color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    height_cm: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight_kg: Mapped[int | None] = mapped_column(Integer, nullable=True)
    measurements: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tattoos: Mapped[str | None] = mapped_column(Text, nullable=True)
    piercings: Mapped[str | None] = mapped_column(Text, nullable=True)
    career_length: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    alias_list: Mapped[list[str]] = mapped_column(JSON, default=list)
    urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    scene_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gallery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    group_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    o_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    image_path: Mapped[str | None] = mapped_column(Text, nullable=True)


class CachedStudio(CachedEntity, Base):
    __tablename__ = "cached_studios"

    name: Mapped[str] = mapped_column(String(255), index=True)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    scene_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gallery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    performer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    group_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    image_path: Mapped[str | None] = mapped_column(Text, nullable=True)


class CachedTag(CachedEntity, Base):
    __tablename__ = "cached_tags"

    name: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    aliases: Mapped[list[str]] = mapped_column(JSON, default=list)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    image_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    scene_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gallery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    performer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    studio_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    group_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    scene_marker_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class CachedGroup(CachedEntity, Base):
    __tablename__ = "cached_groups"

    name: Mapped[str] = mapped_column(String(255), index=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    director: Mapped[str | None] = mapped_column(String(255), nullable=True)
    synopsis: Mapped[str | None] = mapped_column(Text, nullable=True)
    urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    front_image_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    back_image_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    scene_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    performer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class CachedGallery(CachedEntity, Base):
    __tablename__ = "cached_galleries"

    title: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    code: Mapped[str | None] = mapped_column(String(120), nullable=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    photographer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    organized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)
    folder_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    cover_path: Mapped[str | None] = mapped_column(Text, nullable=True)


class CachedImage(CachedEntity, Base):
    __tablename__ = "cached_images"

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str | None] = mapped_column(String(120), nullable=True)
    date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    photographer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    urls: Mapped[list[str]] = mapped_column(JSON, default=list)
    studio_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    rating100: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    o_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    organized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    path_thumbnail: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    path_image: Mapped[str | None] = mapped_column(Text, nullable=True)


# --------------------------------------------------------------------------
# Relation edges. No foreign keys: a scene may reference a performer that
# has not been synced yet.
# --------------------------------------------------------------------------


def _edge_table(name: str, owner: str, target: str, *extra: Column[Any]) -> Table:
    return Table(
        name,
        Base.metadata,
        Column(f"{owner}_id", String(64), primary_key=True),
        Column(f"{target}_id", String(64), primary_key=True),
        Column("source_id", String(64), primary_key=True),
        *extra,
        Index(f"ix_{name}_{target}_id", f"{target}_id", "source_id"),
    )


scene_performers = _edge_table("scene_performers", "scene", "performer")
scene_tags = _edge_table("scene_tags", "scene", "tag")
scene_groups = _edge_table(
    "scene_groups", "scene", "group", Column("scene_index", Integer, nullable=True)
)
scene_galleries = _edge_table("scene_galleries", "scene", "gallery")
image_performers = _edge_table("image_performers", "image", "performer")
image_tags = _edge_table("image_tags", "image", "tag")
image_galleries = _edge_table("image_galleries", "image", "gallery")
gallery_performers = _edge_table("gallery_performers", "gallery", "performer")
gallery_tags = _edge_table("gallery_tags", "gallery", "tag")
performer_tags = _edge_table("performer_tags", "performer", "tag")
studio_tags = _edge_table("studio_tags", "studio", "tag")
group_tags = _edge_table("group_tags", "group", "tag")
tag_parents = _edge_table("tag_parents", "tag", "parent")


# --------------------------------------------------------------------------
# Per-user overlays. Written by user-facing endpoints, read by the query
# builder; never touched by sync.
# --------------------------------------------------------------------------


class UserOverlay:
    """Columns identifying the user and the composite entity an overlay targets."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    entity_id: Mapped[str] = mapped_column(String(64))
    source_id: Mapped[str] = mapped_column(String(64))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Any, ...]:
        return (
            UniqueConstraint(
                "user_id",
                "entity_id",
                "source_id",
                name=f"uq_{cls.__tablename__}_user_entity",
            ),
            Index(f"ix_{cls.__tablename__}_entity", "entity_id", "source_id"),
        )


class EntityRating(UserOverlay):
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    favorite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class SceneRating(EntityRating, Base):
    __tablename__ = "scene_ratings"


class PerformerRating(EntityRating, Base):
    __tablename__ = "performer_ratings"


class StudioRating(EntityRating, Base):
    __tablename__ = "studio_ratings"


class TagRating(EntityRating, Base):
    __tablename__ = "tag_ratings"


class GroupRating(EntityRating, Base):
    __tablename__ = "group_ratings"


class GalleryRating(EntityRating, Base):
    __tablename__ = "gallery_ratings"


class ImageRating(EntityRating, Base):
    __tablename__ = "image_ratings"


class WatchHistory(UserOverlay, Base):
    """Per-user playback statistics for a scene."""

    __tablename__ = "watch_history"

    play_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    play_duration: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    resume_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_played_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    o_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_o_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ImageViewHistory(UserOverlay, Base):
    """Per-user view statistics for an image."""

    __tablename__ = "image_view_history"

    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    o_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_viewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EngagementStats(UserOverlay):
    o_counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    play_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_played_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_o_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class UserPerformerStats(EngagementStats, Base):
    __tablename__ = "user_performer_stats"


class UserStudioStats(EngagementStats, Base):
    __tablename__ = "user_studio_stats"


class UserTagStats(EngagementStats, Base):
    __tablename__ = "user_tag_stats"
