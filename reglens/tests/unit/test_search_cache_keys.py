from __future__ import annotations

import re

import pytest

from reglens.services.search_cache import cache_key, canonical_filters, normalize_query


def test_cache_key_is_sha256_hex() -> None:
    assert re.fullmatch(r"[0-9a-f]{64}", cache_key("data retention", {"domains": ["gdpr"]}))


def test_query_normalization_collapses_case_and_whitespace() -> None:
    assert normalize_query("  Data   RETENTION\tperiods ") == "data retention periods"
    assert cache_key("Data Retention", None) == cache_key("  data   retention ", {})


def test_filter_key_order_does_not_change_key() -> None:
    first = {"domains": ["gdpr", "hipaa"], "limit": 5, "date_from": "2024-01-01"}
    second = {"date_from": "2024-01-01", "limit": 5, "domains": ["hipaa", "gdpr"]}
    assert cache_key("breach notification", first) == cache_key("breach notification", second)


def test_none_filters_are_ignored() -> None:
    assert cache_key("q", {"date_to": None, "limit": 5}) == cache_key("q", {"limit": 5})


def test_distinct_filters_produce_distinct_keys() -> None:
    assert cache_key("q", {"limit": 5}) != cache_key("q", {"limit": 50})
    assert cache_key("q", {"domains": ["gdpr"]}) != cache_key("q", {"sources": ["gdpr"]})


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"b": 1, "a": {"d": None, "c": [3, 1, 2]}}, {"a": {"c": [1, 2, 3]}, "b": 1}),
        ([{"x": 1}, {"y": 2}], [{"x": 1}, {"y": 2}]),
        ("plain", "plain"),
    ],
)
def test_canonical_filters(raw, expected) -> None:
    assert canonical_filters(raw) == expected
