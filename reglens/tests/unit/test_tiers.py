from __future__ import annotations

import pytest

from reglens.core.errors import InvalidQuotaInputError
from reglens.domain.tiers import (
    QUOTA_API_CALL,
    QUOTA_EXPORT,
    QUOTA_SEARCH,
    UNLIMITED,
    get_policy,
    is_terminal_tier,
    limit_for,
    normalize_tier,
    suggested_tier,
    validate_quota_type,
)


def test_seeded_policies_match_published_plans() -> None:
    free = get_policy("free")
    pro = get_policy("pro")
    enterprise = get_policy("enterprise")

    assert (free.searches_per_day, free.results_per_search) == (20, 5)
    assert (pro.searches_per_day, pro.results_per_search) == (500, 50)
    assert (enterprise.searches_per_day, enterprise.results_per_search) == (UNLIMITED, 100)
    assert not free.export_enabled and pro.export_enabled
    assert enterprise.api_access and enterprise.custom_integrations and enterprise.priority_support


@pytest.mark.parametrize("tier", [None, "", "platinum", "FREE "])
def test_unknown_or_missing_tier_falls_back_to_free(tier) -> None:
    assert get_policy(tier).tier == "free"
    assert normalize_tier(tier) == "free"


@pytest.mark.parametrize(
    ("tier", "expected"),
    [("free", "pro"), ("pro", "enterprise"), ("enterprise", "enterprise"), ("gold", "pro"), (None, "pro")],
)
def test_suggested_tier_mapping(tier, expected) -> None:
    assert suggested_tier(tier) == expected


def test_enterprise_is_the_only_terminal_tier() -> None:
    assert is_terminal_tier("enterprise")
    assert not is_terminal_tier("pro")
    assert not is_terminal_tier("free")


def test_limit_for_covers_every_quota_type() -> None:
    assert limit_for(get_policy("free"), QUOTA_SEARCH) == 20
    assert limit_for(get_policy("free"), QUOTA_EXPORT) == 0
    assert limit_for(get_policy("pro"), QUOTA_EXPORT) == 100
    assert limit_for(get_policy("pro"), QUOTA_API_CALL) == 0
    assert limit_for(get_policy("enterprise"), QUOTA_API_CALL) == UNLIMITED


def test_unknown_quota_type_is_rejected() -> None:
    with pytest.raises(InvalidQuotaInputError):
        validate_quota_type("downloads")
    with pytest.raises(InvalidQuotaInputError):
        limit_for(get_policy("pro"), "downloads")
