"""Composite ``id:sourceId`` keys for entities mirrored from several sources.

Raw identifiers are only unique within the source that issued them. Anywhere
an identifier crosses a source boundary (filter values, API paths, overlay
rows) it travels as an :data:`EntityRef`, which at runtime is a plain string.
"""

from __future__ import annotations

from typing import Callable, Iterable, NamedTuple, NewType, TypeVar

from .errors import CompositeKeyError

EntityRef = NewType("EntityRef", str)

T = TypeVar("T")


class ParsedRef(NamedTuple):
    """Components of a composite key; ``source_id`` is ``None`` for bare ids."""

    id: str
    source_id: str | None


def make_ref(raw_id: str | int, source_id: str) -> EntityRef:
    """Return the composite key for ``raw_id`` within ``source_id``."""

    return EntityRef(f"{raw_id}:{source_id}")


def parse_ref(key: str) -> ParsedRef:
    """Split a composite key on its first colon.

    Source identifiers may themselves contain colons, so everything after the
    first separator belongs to the source segment. A key without a colon is a
    bare id from a single-source deployment.
    """

    if not key:
        return ParsedRef(key, None)
    value = str(key)
    raw_id, separator, source_id = value.partition(":")
    if not separator:
        return ParsedRef(value, None)
    return ParsedRef(raw_id, source_id)


def is_ref(value: object) -> bool:
    return isinstance(value, str) and ":" in value


def assert_ref(value: str) -> EntityRef:
    """Return ``value`` as an :data:`EntityRef` or raise if it is bare."""

    if not is_ref(value):
        raise CompositeKeyError(f'Expected composite key "id:sourceId", got "{value}"')
    return EntityRef(value)


def coerce_refs(values: Iterable[str]) -> list[EntityRef]:
    """Accept client supplied identifiers as entity references.

    Bare and composite values are both allowed; parsing downstream copes with
    either form.
    """

    return [EntityRef(str(value)) for value in values]


def group_ids_by_source(
    items: Iterable[T],
    get_source_id: Callable[[T], str | None],
    get_entity_id: Callable[[T], str],
    default_source_id: str,
) -> dict[str, list[str]]:
    """Group entity ids by their owning source for batched lookups.

    Items with no source fall under ``default_source_id`` so lookups against
    cached tables (which always carry a real source) still match.
    """

    grouped: dict[str, list[str]] = {}
    for item in items:
        source_id = get_source_id(item) or default_source_id
        grouped.setdefault(source_id, []).append(get_entity_id(item))
    return grouped

