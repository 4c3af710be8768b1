from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.core.errors import PromptNotFoundError
from reglens.domain.models import UpgradePrompt
from reglens.persistence.guards import require_user_id, store_guard


logger = logging.getLogger(__name__)

PROMPT_TYPE_QUOTA_EXCEEDED = "quota_exceeded"

_STORE = "upgrade_prompts"


@dataclass(frozen=True)
class PromptView:
    # Detached view of a prompt row for API payloads and notifications.
    id: str
    user_id: str
    prompt_type: str
    quota_type: str
    current_tier: str
    suggested_tier: str
    shown_at: datetime
    dismissed_at: datetime | None
    converted_at: datetime | None
    metadata: dict[str, Any] | None

    @property
    def is_active(self) -> bool:
        return self.dismissed_at is None and self.converted_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt_type": self.prompt_type,
            "quota_type": self.quota_type,
            "current_tier": self.current_tier,
            "suggested_tier": self.suggested_tier,
            "shown_at": self.shown_at.isoformat(),
            "dismissed_at": self.dismissed_at.isoformat() if self.dismissed_at else None,
            "converted_at": self.converted_at.isoformat() if self.converted_at else None,
            "metadata": self.metadata or {},
        }


def _view(row: UpgradePrompt) -> PromptView:
    return PromptView(
        id=row.id,
        user_id=row.user_id,
        prompt_type=row.prompt_type,
        quota_type=row.quota_type,
        current_tier=row.current_tier,
        suggested_tier=row.suggested_tier,
        shown_at=row.shown_at,
        dismissed_at=row.dismissed_at,
        converted_at=row.converted_at,
        metadata=row.metadata_json,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UpgradePromptTracker:
    """Records upgrade prompts and their dismiss/convert lifecycle.

    A prompt is active until it is dismissed or converted; both are terminal and
    are never overwritten. At most one active prompt exists per user and quota type,
    enforced by a partial unique index so concurrent creators cannot both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cooldown_hours: int = 24,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cooldown = timedelta(hours=max(0, int(cooldown_hours)))
        self._time_provider = time_provider or _utc_now

    async def maybe_create_prompt(
        self,
        user_id: str,
        quota_type: str,
        *,
        current_tier: str,
        suggested_tier: str,
        metadata: dict[str, Any] | None = None,
    ) -> PromptView | None:
        require_user_id(user_id)
        now = self._time_provider()
        async with store_guard(_STORE, "maybe_create_prompt"):
            async with self._session_factory() as session:
                if await self._active_prompt(session, user_id, quota_type) is not None:
                    return None
                if await self._recently_closed(session, user_id, quota_type, now):
                    return None
            row = UpgradePrompt(
                id=str(uuid4()),
                user_id=user_id,
                prompt_type=PROMPT_TYPE_QUOTA_EXCEEDED,
                quota_type=quota_type,
                current_tier=current_tier,
                suggested_tier=suggested_tier,
                shown_at=now,
                metadata_json=metadata or {},
            )
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        session.add(row)
                except IntegrityError:
                    # Another request created the active prompt first.
                    logger.info("upgrade_prompt_duplicate user_id=%s quota_type=%s", user_id, quota_type)
                    return None
        logger.info(
            "upgrade_prompt_created user_id=%s quota_type=%s suggested_tier=%s",
            user_id,
            quota_type,
            suggested_tier,
        )
        return _view(row)

    async def should_show(self, user_id: str, quota_type: str) -> bool:
        # Hide prompts for a pair the user dismissed or converted within the cooldown.
        require_user_id(user_id)
        now = self._time_provider()
        async with store_guard(_STORE, "should_show"):
            async with self._session_factory() as session:
                return not await self._recently_closed(session, user_id, quota_type, now)

    async def dismiss(self, prompt_id: str, *, user_id: str) -> PromptView:
        return await self._close(prompt_id, user_id=user_id, column="dismissed_at")

    async def mark_converted(self, prompt_id: str, *, user_id: str) -> PromptView:
        return await self._close(prompt_id, user_id=user_id, column="converted_at")

    async def list_prompts(self, user_id: str, *, include_dismissed: bool = False) -> list[PromptView]:
        require_user_id(user_id)
        stmt = select(UpgradePrompt).where(UpgradePrompt.user_id == user_id)
        if not include_dismissed:
            stmt = stmt.where(UpgradePrompt.dismissed_at.is_(None))
        stmt = stmt.order_by(UpgradePrompt.shown_at.desc())
        async with store_guard(_STORE, "list_prompts"):
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        return [_view(row) for row in rows]

    async def _close(self, prompt_id: str, *, user_id: str, column: str) -> PromptView:
        # Conditional update: only active prompts transition, terminal ones are returned as-is.
        require_user_id(user_id)
        now = self._time_provider()
        async with store_guard(_STORE, f"close_{column}"):
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(UpgradePrompt)
                        .where(
                            UpgradePrompt.id == prompt_id,
                            UpgradePrompt.user_id == user_id,
                            UpgradePrompt.dismissed_at.is_(None),
                            UpgradePrompt.converted_at.is_(None),
                        )
                        .values({column: now})
                        .execution_options(synchronize_session=False)
                    )
                    row = (
                        await session.execute(
                            select(UpgradePrompt).where(
                                UpgradePrompt.id == prompt_id,
                                UpgradePrompt.user_id == user_id,
                            )
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        raise PromptNotFoundError(f"Upgrade prompt {prompt_id} not found")
                    view = _view(row)
        logger.info("upgrade_prompt_updated prompt_id=%s field=%s", prompt_id, column)
        return view

    async def _active_prompt(
        self, session: AsyncSession, user_id: str, quota_type: str
    ) -> UpgradePrompt | None:
        stmt = select(UpgradePrompt).where(
            UpgradePrompt.user_id == user_id,
            UpgradePrompt.quota_type == quota_type,
            UpgradePrompt.dismissed_at.is_(None),
            UpgradePrompt.converted_at.is_(None),
        )
        return (await session.execute(stmt)).scalars().first()

    async def _recently_closed(
        self, session: AsyncSession, user_id: str, quota_type: str, now: datetime
    ) -> bool:
        if not self._cooldown:
            return False
        cutoff = now - self._cooldown
        stmt = (
            select(UpgradePrompt.id)
            .where(
                UpgradePrompt.user_id == user_id,
                UpgradePrompt.quota_type == quota_type,
                or_(UpgradePrompt.dismissed_at >= cutoff, UpgradePrompt.converted_at >= cutoff),
            )
            .limit(1)
        )
        return (await session.execute(stmt)).scalar_one_or_none() is not None
