from datetime import datetime

from app.utils import build_fts_query, escape_like, format_timestamp, parse_timestamp, slugify


def test_slugify_basic():
    assert slugify("Home Stash (NAS)!") == "home-stash-nas"


def test_slugify_falls_back_for_symbols_only():
    assert slugify("!!!") == "source"


def test_parse_timestamp_normalises_offsets_to_naive_utc():
    assert parse_timestamp("2024-03-01T12:30:00+02:00") == datetime(2024, 3, 1, 10, 30)
    assert parse_timestamp("2024-03-01T12:30:00Z") == datetime(2024, 3, 1, 12, 30)
    assert parse_timestamp("2024-03-01") == datetime(2024, 3, 1)


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None


def test_format_timestamp_drops_microseconds():
    assert format_timestamp(datetime(2024, 3, 1, 10, 30, 5, 999)) == "2024-03-01T10:30:05Z"


def test_build_fts_query_quotes_tokens_and_prefixes_last():
    assert build_fts_query('beach "sun') == '"beach" "sun"*'
    assert build_fts_query("  -- ") is None


def test_escape_like_escapes_wildcards():
    assert escape_like("100%_off\\") == "100\\%\\_off\\\\"
