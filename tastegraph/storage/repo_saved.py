"""Repository for saved recommendations."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.storage.json_utils import safe_json_dumps, safe_json_loads
from tastegraph.storage.models import SavedRecommendation


class SavedRepo:
    """Repository for recommendations the user chose to keep."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def save(self, rec_id: str, payload: dict[str, Any], profile_id: str | None = None) -> SavedRecommendation:
        """Insert or replace a saved recommendation.

        Args:
            rec_id: Stable recommendation ID
            payload: Serialized recommendation
            profile_id: Originating profile, if any

        Returns:
            Stored row
        """
        saved = await self.get(rec_id)
        now = datetime.now(timezone.utc)
        if saved is None:
            saved = SavedRecommendation(rec_id=rec_id)
            self.session.add(saved)
        saved.profile_id = profile_id
        saved.name = str(payload.get("name") or "")
        saved.payload_json = safe_json_dumps(payload)
        saved.saved_at = now
        await self.session.commit()
        return saved

    async def get(self, rec_id: str) -> SavedRecommendation | None:
        stmt = select(SavedRecommendation).where(SavedRecommendation.rec_id == rec_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_saved(self, profile_id: str | None = None) -> list[dict[str, Any]]:
        """List saved payloads, newest first, optionally for one profile."""
        stmt = select(SavedRecommendation).order_by(SavedRecommendation.saved_at.desc())
        if profile_id is not None:
            stmt = stmt.where(SavedRecommendation.profile_id == profile_id)
        result = await self.session.execute(stmt)
        payloads = []
        for row in result.scalars().all():
            payload = safe_json_loads(row.payload_json)
            payload.update(
                id=row.rec_id,
                profile_id=row.profile_id,
                saved_at=row.saved_at.isoformat(),
            )
            payloads.append(payload)
        return payloads

    async def delete(self, rec_id: str) -> bool:
        result = await self.session.execute(
            delete(SavedRecommendation).where(SavedRecommendation.rec_id == rec_id)
        )
        await self.session.commit()
        return result.rowcount > 0
