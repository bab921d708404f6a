"""Typed query input for reading the replica."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .refs import EntityRef, coerce_refs

CriterionModifier = Literal[
    "EQUALS",
    "NOT_EQUALS",
    "GREATER_THAN",
    "LESS_THAN",
    "BETWEEN",
    "NOT_BETWEEN",
    "IS_NULL",
    "NOT_NULL",
    "INCLUDES",
    "EXCLUDES",
]

RefModifier = Literal["INCLUDES", "INCLUDES_ALL", "EXCLUDES"]

SortDirection = Literal["ASC", "DESC"]

RANGE_MODIFIERS = {"BETWEEN", "NOT_BETWEEN"}
NULL_MODIFIERS = {"IS_NULL", "NOT_NULL"}
MAX_PER_PAGE = 1_000


class Criterion(BaseModel):
    """Comparison against a single mirrored column.

    ``value2`` is the upper bound for ``BETWEEN`` / ``NOT_BETWEEN``.
    ``INCLUDES`` / ``EXCLUDES`` take a list for set membership or a string
    for a substring match.
    """

    model_config = ConfigDict(extra="forbid")

    modifier: CriterionModifier = "EQUALS"
    value: Any = None
    value2: Any = None

    @model_validator(mode="after")
    def _check_operands(self) -> "Criterion":
        if self.modifier in NULL_MODIFIERS:
            return self
        if self.value is None:
            raise ValueError(f"{self.modifier} requires a value")
        if self.modifier in RANGE_MODIFIERS and self.value2 is None:
            raise ValueError(f"{self.modifier} requires value and value2")
        return self


class RefCriterion(BaseModel):
    """Match entities related to the given composite keys.

    ``depth`` expands tag and studio hierarchies: ``0`` matches only the
    listed entities, ``-1`` includes every descendant.
    """

    model_config = ConfigDict(extra="forbid")

    value: list[EntityRef] = Field(default_factory=list)
    modifier: RefModifier = "INCLUDES"
    depth: int = Field(default=0, ge=-1)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_values(cls, value: Any) -> list[EntityRef]:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        return coerce_refs(value)


class EntityQuery(BaseModel):
    """Filter, sort and pagination options for one kind."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    filters: dict[str, Criterion] = Field(default_factory=dict)
    relations: dict[str, RefCriterion] = Field(default_factory=dict)
    ids: RefCriterion | None = None
    q: str | None = None
    favorite: bool | None = None
    rating: Criterion | None = None
    sort: str | None = None
    direction: SortDirection | None = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=40, ge=1, le=MAX_PER_PAGE, alias="perPage")
    include_deleted: bool = False
    source_ids: list[str] | None = None

    @field_validator("direction", mode="before")
    @classmethod
    def _normalise_direction(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator("q", mode="before")
    @classmethod
    def _blank_query(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class QueryPage(BaseModel):
    """A page of rows with the total number of matches."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    per_page: int = Field(default=40, serialization_alias="perPage")
