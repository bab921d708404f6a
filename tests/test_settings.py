"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import DEFAULT_REQUIRED_KINDS, Settings


def test_required_kinds_subset_selection() -> None:
    """Settings should respect a custom set of readiness kinds."""

    settings = Settings(_env_file=None, REQUIRED_KINDS="scene,performer")

    assert settings.required_kinds == ("scene", "performer")


def test_required_kinds_accepts_case_insensitive_values() -> None:
    """Kinds should be parsed case-insensitively and de-duplicated."""

    settings = Settings(_env_file=None, REQUIRED_KINDS=["Scene", "TAG", "scene"])

    assert settings.required_kinds == ("scene", "tag")


def test_required_kinds_blank_defaults() -> None:
    """Blank kinds should fall back to every mirrored kind."""

    settings = Settings(_env_file=None, REQUIRED_KINDS=" , ")

    assert settings.required_kinds == DEFAULT_REQUIRED_KINDS


def test_required_kinds_invalid_raises() -> None:
    """Unknown kinds should raise a validation error."""

    with pytest.raises(ValueError, match="Unknown entity kinds configured"):
        Settings(_env_file=None, REQUIRED_KINDS="scene,marker")


def test_stash_url_accepts_legacy_variable_name() -> None:
    settings = Settings(_env_file=None, STASH_GRAPHQL_URL="http://stash.local:9999/graphql")

    assert str(settings.stash_url) == "http://stash.local:9999/graphql"


def test_sync_interval_has_a_floor() -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, SYNC_INTERVAL=5)


def test_source_retries_are_bounded() -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, SOURCE_MAX_RETRIES=11)
