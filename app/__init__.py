"""StashMirror: a local, query-optimised replica of Stash catalog metadata."""

from __future__ import annotations

from importlib import import_module
from typing import Any

# Resolved lazily so importing ``app.refs`` does not build the FastAPI app.
_EXPORTS = {
    "app": "app.main",
    "create_app": "app.main",
    "Settings": "app.config",
    "get_settings": "app.config",
    "make_ref": "app.refs",
    "parse_ref": "app.refs",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'app' has no attribute {name}")
    return getattr(import_module(module_name), name)
