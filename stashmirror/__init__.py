"""Installable entry points for the StashMirror service.

``stashmirror`` serves the HTTP API; ``stashmirror sync`` runs one sync
pass against the configured sources and exits.
"""

from __future__ import annotations

__version__ = "1.0.0"

__all__ = ["__version__"]
