"""Pydantic models describing upstream catalog payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import parse_timestamp


class IdRef(BaseModel):
    """A nested ``{id}`` reference to another upstream entity."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str


class SceneGroupRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    group: IdRef
    scene_index: int | None = None


class VideoFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str | None = None
    size: int | None = None
    duration: float | None = None
    bit_rate: int | None = None
    frame_rate: float | None = None
    width: int | None = None
    height: int | None = None
    video_codec: str | None = None
    audio_codec: str | None = None


class ImageFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str | None = None
    size: int | None = None
    width: int | None = None
    height: int | None = None


class ScenePaths(BaseModel):
    model_config = ConfigDict(extra="ignore")

    screenshot: str | None = None
    preview: str | None = None
    sprite: str | None = None
    vtt: str | None = None
    chapters_vtt: str | None = None
    stream: str | None = None
    caption: str | None = None


class ImagePaths(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thumbnail: str | None = None
    preview: str | None = None
    image: str | None = None


class UpstreamEntity(BaseModel):
    """Fields every upstream entity carries."""

    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, coerce_numbers_to_str=True
    )

    kind: ClassVar[str]

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    def columns(self) -> dict[str, Any]:
        """Return mirrored attributes keyed by cached column name.

        Each kind lists its own columns; the base carries only the shared
        fields that :meth:`to_row` adds.
        """

        return {}

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        """Return outgoing edges keyed by edge table name.

        Rows omit the owner id and source id, which the replica fills in.
        """

        return {}

    def to_row(self, source_id: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": source_id,
            "source_created_at": self.created_at,
            "source_updated_at": self.updated_at,
            **self.columns(),
        }


def _targets(refs: list[IdRef], column: str) -> list[dict[str, Any]]:
    seen: set[str] = set()
    rows: list[dict[str, Any]] = []
    for ref in refs:
        if ref.id in seen:
            continue
        seen.add(ref.id)
        rows.append({column: ref.id})
    return rows


class StashScene(UpstreamEntity):
    kind: ClassVar[str] = "scene"

    title: str | None = None
    code: str | None = None
    details: str | None = None
    date: str | None = None
    rating100: int | None = None
    organized: bool = False
    o_counter: int | None = 0
    play_count: int | None = 0
    play_duration: float | None = 0.0
    studio: IdRef | None = None
    files: list[VideoFile] = Field(default_factory=list)
    paths: ScenePaths = Field(default_factory=ScenePaths)
    performers: list[IdRef] = Field(default_factory=list)
    tags: list[IdRef] = Field(default_factory=list)
    groups: list[SceneGroupRef] = Field(
        default_factory=list, validation_alias=AliasChoices("groups", "movies")
    )
    galleries: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        primary = self.files[0] if self.files else VideoFile()
        return {
            "title": self.title,
            "code": self.code,
            "details": self.details,
            "date": self.date,
            "rating100": self.rating100,
            "organized": self.organized,
            "o_counter": self.o_counter or 0,
            "play_count": self.play_count or 0,
            "play_duration": self.play_duration or 0.0,
            "studio_id": self.studio.id if self.studio else None,
            "duration": primary.duration,
            "file_path": primary.path,
            "file_size": primary.size,
            "file_bit_rate": primary.bit_rate,
            "file_frame_rate": primary.frame_rate,
            "file_width": primary.width,
            "file_height": primary.height,
            "file_video_codec": primary.video_codec,
            "file_audio_codec": primary.audio_codec,
            "path_screenshot": self.paths.screenshot,
            "path_preview": self.paths.preview,
            "path_sprite": self.paths.sprite,
            "path_vtt": self.paths.vtt,
            "path_chapters_vtt": self.paths.chapters_vtt,
            "path_stream": self.paths.stream,
            "path_caption": self.paths.caption,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        groups: dict[str, dict[str, Any]] = {}
        for entry in self.groups:
            groups.setdefault(
                entry.group.id,
                {"group_id": entry.group.id, "scene_index": entry.scene_index},
            )
        return {
            "scene_performers": _targets(self.performers, "performer_id"),
            "scene_tags": _targets(self.tags, "tag_id"),
            "scene_groups": list(groups.values()),
            "scene_galleries": _targets(self.galleries, "gallery_id"),
        }


class StashPerformer(UpstreamEntity):
    kind: ClassVar[str] = "performer"

    name: str
    disambiguation: str | None = None
    gender: str | None = None
    birthdate: str | None = None
    death_date: str | None = None
    country: str | None = None
    ethnicity: str | None = None
    hair_color: str | None = None
    eye_color: str | None = None
    height_cm: int | None = None
    weight: int | None = None
    measurements: str | None = None
    tattoos: str | None = None
    piercings: str | None = None
    career_length: str | None = None
    details: str | None = None
    alias_list: list[str] = Field(default_factory=list)
    urls: list[str] = Field(default_factory=list)
    favorite: bool = False
    rating100: int | None = None
    scene_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    group_count: int = 0
    o_counter: int | None = 0
    image_path: str | None = None
    tags: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "disambiguation": self.disambiguation,
            "gender": self.gender,
            "birthdate": self.birthdate,
            "death_date": self.death_date,
            "country": self.country,
            "ethnicity": self.ethnicity,
            "hair_color": self.hair_color,
            "eye_color": self.eye_color,
            "height_cm": self.height_cm,
            "weight_kg": self.weight,
            "measurements": self.measurements,
            "tattoos": self.tattoos,
            "piercings": self.piercings,
            "career_length": self.career_length,
            "details": self.details,
            "alias_list": list(self.alias_list),
            "urls": list(self.urls),
            "favorite": self.favorite,
            "rating100": self.rating100,
            "scene_count": self.scene_count,
            "image_count": self.image_count,
            "gallery_count": self.gallery_count,
            "group_count": self.group_count,
            "o_counter": self.o_counter or 0,
            "image_path": self.image_path,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {"performer_tags": _targets(self.tags, "tag_id")}


class StashStudio(UpstreamEntity):
    kind: ClassVar[str] = "studio"

    name: str
    parent_studio: IdRef | None = None
    details: str | None = None
    urls: list[str] = Field(default_factory=list)
    favorite: bool = False
    rating100: int | None = None
    scene_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    performer_count: int = 0
    group_count: int = 0
    image_path: str | None = None
    tags: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parent_id": self.parent_studio.id if self.parent_studio else None,
            "details": self.details,
            "urls": list(self.urls),
            "favorite": self.favorite,
            "rating100": self.rating100,
            "scene_count": self.scene_count,
            "image_count": self.image_count,
            "gallery_count": self.gallery_count,
            "performer_count": self.performer_count,
            "group_count": self.group_count,
            "image_path": self.image_path,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {"studio_tags": _targets(self.tags, "tag_id")}


class StashTag(UpstreamEntity):
    kind: ClassVar[str] = "tag"

    name: str
    description: str | None = None
    aliases: list[str] = Field(default_factory=list)
    favorite: bool = False
    image_path: str | None = None
    scene_count: int = 0
    image_count: int = 0
    gallery_count: int = 0
    performer_count: int = 0
    studio_count: int = 0
    group_count: int = 0
    scene_marker_count: int = 0
    parents: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "aliases": list(self.aliases),
            "favorite": self.favorite,
            "image_path": self.image_path,
            "scene_count": self.scene_count,
            "image_count": self.image_count,
            "gallery_count": self.gallery_count,
            "performer_count": self.performer_count,
            "studio_count": self.studio_count,
            "group_count": self.group_count,
            "scene_marker_count": self.scene_marker_count,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {"tag_parents": _targets(self.parents, "parent_id")}


class StashGroup(UpstreamEntity):
    kind: ClassVar[str] = "group"

    name: str
    date: str | None = None
    studio: IdRef | None = None
    rating100: int | None = None
    duration: int | None = None
    director: str | None = None
    synopsis: str | None = None
    urls: list[str] = Field(default_factory=list)
    front_image_path: str | None = None
    back_image_path: str | None = None
    scene_count: int = 0
    performer_count: int = 0
    tags: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "date": self.date,
            "studio_id": self.studio.id if self.studio else None,
            "rating100": self.rating100,
            "duration": self.duration,
            "director": self.director,
            "synopsis": self.synopsis,
            "urls": list(self.urls),
            "front_image_path": self.front_image_path,
            "back_image_path": self.back_image_path,
            "scene_count": self.scene_count,
            "performer_count": self.performer_count,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {"group_tags": _targets(self.tags, "tag_id")}


class GalleryFolder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str | None = None


class GalleryPaths(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cover: str | None = None


class StashGallery(UpstreamEntity):
    kind: ClassVar[str] = "gallery"

    title: str | None = None
    code: str | None = None
    date: str | None = None
    details: str | None = None
    photographer: str | None = None
    urls: list[str] = Field(default_factory=list)
    studio: IdRef | None = None
    rating100: int | None = None
    organized: bool = False
    image_count: int = 0
    folder: GalleryFolder | None = None
    paths: GalleryPaths = Field(default_factory=GalleryPaths)
    performers: list[IdRef] = Field(default_factory=list)
    tags: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "code": self.code,
            "date": self.date,
            "details": self.details,
            "photographer": self.photographer,
            "urls": list(self.urls),
            "studio_id": self.studio.id if self.studio else None,
            "rating100": self.rating100,
            "organized": self.organized,
            "image_count": self.image_count,
            "folder_path": self.folder.path if self.folder else None,
            "cover_path": self.paths.cover,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "gallery_performers": _targets(self.performers, "performer_id"),
            "gallery_tags": _targets(self.tags, "tag_id"),
        }


class StashImage(UpstreamEntity):
    kind: ClassVar[str] = "image"

    title: str | None = None
    code: str | None = None
    date: str | None = None
    details: str | None = None
    photographer: str | None = None
    urls: list[str] = Field(default_factory=list)
    studio: IdRef | None = None
    rating100: int | None = None
    o_counter: int | None = 0
    organized: bool = False
    files: list[ImageFile] = Field(
        default_factory=list, validation_alias=AliasChoices("visual_files", "files")
    )
    paths: ImagePaths = Field(default_factory=ImagePaths)
    performers: list[IdRef] = Field(default_factory=list)
    tags: list[IdRef] = Field(default_factory=list)
    galleries: list[IdRef] = Field(default_factory=list)

    def columns(self) -> dict[str, Any]:
        primary = self.files[0] if self.files else ImageFile()
        return {
            "title": self.title,
            "code": self.code,
            "date": self.date,
            "details": self.details,
            "photographer": self.photographer,
            "urls": list(self.urls),
            "studio_id": self.studio.id if self.studio else None,
            "rating100": self.rating100,
            "o_counter": self.o_counter or 0,
            "organized": self.organized,
            "file_path": primary.path,
            "width": primary.width,
            "height": primary.height,
            "file_size": primary.size,
            "path_thumbnail": self.paths.thumbnail,
            "path_preview": self.paths.preview,
            "path_image": self.paths.image,
        }

    def edges(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "image_performers": _targets(self.performers, "performer_id"),
            "image_tags": _targets(self.tags, "tag_id"),
            "image_galleries": _targets(self.galleries, "gallery_id"),
        }


PAYLOAD_MODELS: dict[str, type[UpstreamEntity]] = {
    model.kind: model
    for model in (
        StashScene,
        StashPerformer,
        StashStudio,
        StashTag,
        StashGroup,
        StashGallery,
        StashImage,
    )
}


class EntityPage(BaseModel):
    """One page of entities returned by an upstream listing query."""

    items: list[UpstreamEntity] = Field(default_factory=list)
    count: int | None = None

    def is_last_page(self, page: int, per_page: int) -> bool:
        return self.count is not None and page * per_page >= self.count

    def max_updated_at(self) -> datetime | None:
        stamps = [item.updated_at for item in self.items if item.updated_at]
        return max(stamps) if stamps else None
