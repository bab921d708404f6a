"""Pytest configuration shared by every test module."""

from __future__ import annotations

import sys
from pathlib import Path


# ``app`` and ``stashmirror`` live at the project root; make them importable
# when the suite runs from a plain checkout without ``pip install -e .``.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
