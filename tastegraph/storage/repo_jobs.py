"""Repository for generation job markers, results and rate-limit state."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.core.clock import ensure_utc
from tastegraph.storage.json_utils import safe_json_dumps
from tastegraph.storage.models import GenerationJob, GenerationResult, RateLimitState

GENERATION_RATE_LIMIT_KEY = "generation"


class JobsRepo:
    """Repository for the persisted generation state machine.

    Reads use ``populate_existing`` so a long-lived session still sees rows
    written by other processes.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # In-flight markers
    # ------------------------------------------------------------------

    async def get_marker(self, scope_key: str) -> GenerationJob | None:
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.scope_key == scope_key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_marker(
        self,
        scope_key: str,
        started_at: datetime,
        profile_id: str | None = None,
        filters: dict[str, Any] | None = None,
        source_ids: list[str] | None = None,
    ) -> bool:
        """Insert the Running marker for a scope.

        Returns:
            True if inserted, False if a marker already exists
        """
        insert_stmt = sqlite_insert(GenerationJob).values(
            scope_key=scope_key,
            profile_id=profile_id,
            filters_json=safe_json_dumps(filters or {}),
            source_ids_json=safe_json_dumps(source_ids) if source_ids is not None else None,
            started_at=started_at,
        )
        result = await self.session.execute(
            insert_stmt.on_conflict_do_nothing(index_elements=["scope_key"])
        )
        await self.session.commit()
        return result.rowcount > 0

    async def delete_marker(self, scope_key: str, started_at: datetime | None = None) -> bool:
        """Clear a scope's marker.

        When ``started_at`` is given, only the marker of that exact job is
        removed, so a late finisher never clears a newer job's marker.
        """
        if started_at is None:
            stmt = delete(GenerationJob).where(GenerationJob.scope_key == scope_key)
            result = await self.session.execute(stmt)
            await self.session.commit()
            return result.rowcount > 0

        marker = await self.get_marker(scope_key)
        if marker is None or ensure_utc(marker.started_at) != ensure_utc(started_at):
            return False
        await self.session.delete(marker)
        await self.session.commit()
        return True

    async def delete_stale_markers(self, cutoff: datetime) -> list[str]:
        """Delete markers started before ``cutoff``.

        Returns:
            Scope keys whose markers were removed
        """
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.started_at < cutoff)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        stale = list(result.scalars().all())
        for marker in stale:
            await self.session.delete(marker)
        await self.session.commit()
        return [marker.scope_key for marker in stale]

    # ------------------------------------------------------------------
    # Completed payloads
    # ------------------------------------------------------------------

    async def save_result(self, scope_key: str, items: list[dict[str, Any]]) -> None:
        """Store (replace) the completed payload of a scope."""
        now = datetime.now(timezone.utc)
        values = {"items_json": safe_json_dumps(items, default="[]"), "completed_at": now}
        insert_stmt = sqlite_insert(GenerationResult).values(scope_key=scope_key, **values)
        await self.session.execute(
            insert_stmt.on_conflict_do_update(index_elements=["scope_key"], set_=values)
        )
        await self.session.commit()

    async def get_result(self, scope_key: str) -> GenerationResult | None:
        stmt = (
            select(GenerationResult)
            .where(GenerationResult.scope_key == scope_key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_result(self, scope_key: str) -> bool:
        result = await self.session.execute(
            delete(GenerationResult).where(GenerationResult.scope_key == scope_key)
        )
        await self.session.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Rate limit
    # ------------------------------------------------------------------

    async def get_rate_limit(self, key: str = GENERATION_RATE_LIMIT_KEY) -> RateLimitState | None:
        stmt = (
            select(RateLimitState)
            .where(RateLimitState.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_rate_limit(
        self,
        resume_at: datetime,
        reason: str | None = None,
        key: str = GENERATION_RATE_LIMIT_KEY,
    ) -> datetime:
        """Record the resume time, never moving an existing one earlier.

        Returns:
            Effective resume time
        """
        existing = await self.get_rate_limit(key)
        if existing is not None and ensure_utc(existing.resume_at) >= ensure_utc(resume_at):
            return ensure_utc(existing.resume_at)  # type: ignore[return-value]

        now = datetime.now(timezone.utc)
        values = {"resume_at": resume_at, "recorded_at": now, "reason": reason}
        insert_stmt = sqlite_insert(RateLimitState).values(key=key, **values)
        await self.session.execute(
            insert_stmt.on_conflict_do_update(index_elements=["key"], set_=values)
        )
        await self.session.commit()
        return ensure_utc(resume_at)  # type: ignore[return-value]

    async def delete_rate_limit(self, key: str = GENERATION_RATE_LIMIT_KEY) -> bool:
        result = await self.session.execute(delete(RateLimitState).where(RateLimitState.key == key))
        await self.session.commit()
        return result.rowcount > 0

    async def delete_expired_rate_limits(self, now: datetime) -> int:
        result = await self.session.execute(
            delete(RateLimitState).where(RateLimitState.resume_at <= now)
        )
        await self.session.commit()
        return result.rowcount or 0
