"""Utility helpers for the StashMirror service."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any


FTS_TOKEN_RE = re.compile(r"[\w']+", re.UNICODE)


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in SQLite."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a URL-friendly slug usable as a source identifier."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "source"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse upstream ISO-8601 timestamps into naive UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a naive UTC datetime the way upstream filters expect it."""

    return value.replace(microsecond=0).isoformat() + "Z"


def build_fts_query(query: str) -> str | None:
    """Turn free text into a safe FTS5 MATCH expression.

    Every token is quoted so punctuation can never be read as FTS syntax and
    the last token gets a prefix wildcard for search-as-you-type.
    """

    tokens = FTS_TOKEN_RE.findall(query or "")
    if not tokens:
        return None
    quoted = [f'"{token.replace(chr(34), "")}"' for token in tokens]
    quoted[-1] = f"{quoted[-1]}*"
    return " ".join(quoted)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""

    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
