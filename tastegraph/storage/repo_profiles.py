"""Repository for taste profile operations."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.core.graph import normalize_tag
from tastegraph.storage.json_utils import safe_json_dumps
from tastegraph.storage.models import Profile


def _dedupe(values: list[str] | None) -> list[str]:
    return list(dict.fromkeys(v for v in (values or []) if v))


class ProfilesRepo:
    """Repository for named profiles over sources."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_profile(self, profile_id: str) -> Profile | None:
        stmt = select(Profile).where(Profile.profile_id == profile_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_profiles(self) -> list[Profile]:
        stmt = select(Profile).order_by(Profile.created_at, Profile.profile_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def create_profile(
        self,
        name: str,
        source_ids: list[str] | None = None,
        manual_tags: list[str] | None = None,
    ) -> Profile:
        """Create a profile.

        Args:
            name: Display name
            source_ids: Member source IDs
            manual_tags: Free-text tags added by the user

        Returns:
            The new Profile
        """
        now = datetime.now(timezone.utc)
        profile = Profile(
            profile_id=uuid.uuid4().hex,
            name=name,
            source_ids_json=safe_json_dumps(_dedupe(source_ids), default="[]"),
            manual_tags_json=safe_json_dumps(
                _dedupe([normalize_tag(t) for t in manual_tags or []]), default="[]"
            ),
            excluded_tags_json="[]",
            created_at=now,
            updated_at=now,
        )
        self.session.add(profile)
        await self.session.commit()
        return profile

    async def update_profile(
        self,
        profile_id: str,
        name: str | None = None,
        source_ids: list[str] | None = None,
        manual_tags: list[str] | None = None,
    ) -> Profile | None:
        """Update the given fields; ``None`` leaves a field unchanged."""
        profile = await self.get_profile(profile_id)
        if profile is None:
            return None

        if name is not None:
            profile.name = name
        if source_ids is not None:
            profile.source_ids_json = safe_json_dumps(_dedupe(source_ids), default="[]")
        if manual_tags is not None:
            tags = _dedupe([normalize_tag(t) for t in manual_tags])
            profile.manual_tags_json = safe_json_dumps(tags, default="[]")
            profile.excluded_tags_json = safe_json_dumps(
                [t for t in profile.excluded_tags if t not in tags], default="[]"
            )
        profile.updated_at = datetime.now(timezone.utc)

        await self.session.commit()
        return profile

    async def add_manual_tag(self, profile_id: str, tag: str) -> Profile | None:
        """Add a manual tag and lift any exclusion of it."""
        key = normalize_tag(tag)
        profile = await self.get_profile(profile_id)
        if profile is None or not key:
            return profile

        profile.manual_tags_json = safe_json_dumps(
            _dedupe(profile.manual_tags + [key]), default="[]"
        )
        profile.excluded_tags_json = safe_json_dumps(
            [t for t in profile.excluded_tags if t != key], default="[]"
        )
        profile.updated_at = datetime.now(timezone.utc)
        await self.session.commit()
        return profile

    async def remove_manual_tag(self, profile_id: str, tag: str) -> Profile | None:
        """Remove a manual tag and exclude it from the profile's flatten."""
        key = normalize_tag(tag)
        profile = await self.get_profile(profile_id)
        if profile is None or not key:
            return profile

        profile.manual_tags_json = safe_json_dumps(
            [t for t in profile.manual_tags if t != key], default="[]"
        )
        profile.excluded_tags_json = safe_json_dumps(
            _dedupe(profile.excluded_tags + [key]), default="[]"
        )
        profile.updated_at = datetime.now(timezone.utc)
        await self.session.commit()
        return profile

    async def delete_profile(self, profile_id: str) -> bool:
        result = await self.session.execute(
            delete(Profile).where(Profile.profile_id == profile_id)
        )
        await self.session.commit()
        return result.rowcount > 0
