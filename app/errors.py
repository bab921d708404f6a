"""Exception types raised across the replica, sync and query layers."""

from __future__ import annotations


class StashMirrorError(Exception):
    """Base class for errors raised by the service."""


class SourceUnavailableError(StashMirrorError):
    """The upstream source could not be reached or asked us to back off."""

    def __init__(self, source_id: str, message: str):
        super().__init__(f"Source {source_id} unavailable: {message}")
        self.source_id = source_id


class SourceResponseError(StashMirrorError):
    """The upstream source answered with a payload we cannot interpret."""

    def __init__(self, source_id: str, message: str, *, kind: str | None = None):
        context = f"{source_id}/{kind}" if kind else source_id
        super().__init__(f"Malformed response from {context}: {message}")
        self.source_id = source_id
        self.kind = kind


class CompositeKeyError(StashMirrorError, ValueError):
    """A value expected to be an ``id:sourceId`` key lacks its source segment."""


class QueryValidationError(StashMirrorError, ValueError):
    """The caller supplied an invalid filter, relation or sort field."""


class CacheNotReadyError(StashMirrorError):
    """Raised when a read is attempted before the first full sync finished."""


class UnknownSourceError(StashMirrorError, KeyError):
    """No source configuration exists for the given identifier."""

    def __str__(self) -> str:
        return f"Unknown source {self.args[0]}" if self.args else "Unknown source"
