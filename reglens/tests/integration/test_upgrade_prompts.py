from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from reglens.core.errors import PromptNotFoundError
from reglens.services.upgrade_prompts import UpgradePromptTracker


async def _create(tracker: UpgradePromptTracker, user_id: str = "user-a", quota_type: str = "search"):
    return await tracker.maybe_create_prompt(
        user_id,
        quota_type,
        current_tier="free",
        suggested_tier="pro",
        metadata={"usage_count": 21, "limit_value": 20},
    )


@pytest.mark.asyncio
async def test_only_one_active_prompt_per_user_and_quota(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, time_provider=clock)

    first = await _create(tracker)
    duplicate = await _create(tracker)
    other_type = await _create(tracker, quota_type="export")

    assert first is not None and first.is_active
    assert first.metadata == {"usage_count": 21, "limit_value": 20}
    assert duplicate is None
    assert other_type is not None


@pytest.mark.asyncio
async def test_concurrent_creators_produce_exactly_one_prompt(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, time_provider=clock)

    created = await asyncio.gather(*[_create(tracker) for _ in range(10)])

    assert sum(1 for prompt in created if prompt is not None) == 1
    assert len(await tracker.list_prompts("user-a")) == 1


@pytest.mark.asyncio
async def test_cooldown_suppresses_new_prompts_after_dismiss(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, cooldown_hours=24, time_provider=clock)
    prompt = await _create(tracker)
    await tracker.dismiss(prompt.id, user_id="user-a")

    clock.advance(hours=23)
    assert await tracker.should_show("user-a", "search") is False
    assert await _create(tracker) is None

    clock.advance(hours=2)
    assert await tracker.should_show("user-a", "search") is True
    assert await _create(tracker) is not None


@pytest.mark.asyncio
async def test_closed_prompts_are_terminal(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, time_provider=clock)
    prompt = await _create(tracker)

    converted = await tracker.mark_converted(prompt.id, user_id="user-a")
    clock.advance(minutes=5)
    after_dismiss = await tracker.dismiss(prompt.id, user_id="user-a")
    again = await tracker.mark_converted(prompt.id, user_id="user-a")

    assert converted.converted_at == clock.now - timedelta(minutes=5)
    assert after_dismiss.dismissed_at is None
    assert after_dismiss.converted_at == converted.converted_at
    assert again.converted_at == converted.converted_at


@pytest.mark.asyncio
async def test_prompts_are_scoped_to_their_owner(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, time_provider=clock)
    prompt = await _create(tracker)

    with pytest.raises(PromptNotFoundError):
        await tracker.dismiss(prompt.id, user_id="user-b")
    with pytest.raises(PromptNotFoundError):
        await tracker.dismiss("missing", user_id="user-a")
    assert await tracker.list_prompts("user-b") == []


@pytest.mark.asyncio
async def test_list_prompts_orders_newest_first(session_factory, clock) -> None:
    tracker = UpgradePromptTracker(session_factory, time_provider=clock)
    older = await _create(tracker, quota_type="search")
    clock.advance(minutes=1)
    newer = await _create(tracker, quota_type="export")
    await tracker.dismiss(older.id, user_id="user-a")

    active = await tracker.list_prompts("user-a")
    everything = await tracker.list_prompts("user-a", include_dismissed=True)

    assert [prompt.id for prompt in active] == [newer.id]
    assert [prompt.id for prompt in everything] == [newer.id, older.id]
