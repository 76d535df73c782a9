"""Repository for source and raw item operations."""

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.core.contracts import Descriptor
from tastegraph.core.graph import TagGraph
from tastegraph.storage.json_utils import safe_json_dumps
from tastegraph.storage.models import Source, SourceItem


class SourcesRepo:
    """Repository for sources and their stored descriptors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_source(self, source_id: str) -> Source | None:
        """Get source by ID.

        Args:
            source_id: Source ID

        Returns:
            Source instance or None
        """
        stmt = select(Source).where(Source.source_id == source_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_sources(self, enabled_only: bool = False) -> list[Source]:
        """List sources ordered by creation time."""
        stmt = select(Source).order_by(Source.created_at, Source.source_id)
        if enabled_only:
            stmt = stmt.where(Source.enabled.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_sources(self, source_ids: Iterable[str]) -> list[Source]:
        """Get existing sources among ``source_ids``; unknown ids are dropped."""
        ids = list(dict.fromkeys(source_ids))
        if not ids:
            return []
        stmt = select(Source).where(Source.source_id.in_(ids))
        result = await self.session.execute(stmt)
        by_id = {source.source_id: source for source in result.scalars().all()}
        return [by_id[source_id] for source_id in ids if source_id in by_id]

    async def get_or_create_source(self, source_id: str, name: str, url: str = "") -> Source:
        """Get existing source or create an empty one.

        Args:
            source_id: Deterministic source ID
            name: Display name of the origin
            url: Origin URL

        Returns:
            Source instance (new or existing)
        """
        source = await self.get_source(source_id)
        if source is not None:
            return source

        now = datetime.now(timezone.utc)
        insert_stmt = sqlite_insert(Source).values(
            source_id=source_id,
            name=name,
            label=name,
            url=url or "",
            item_count=0,
            enabled=True,
            graph_json=safe_json_dumps(TagGraph.empty().to_dict()),
            visual_ideas_json="[]",
            created_at=now,
            updated_at=now,
        )
        # Another process may have created it since the read
        await self.session.execute(
            insert_stmt.on_conflict_do_nothing(index_elements=["source_id"])
        )
        await self.session.commit()
        return await self.get_source(source_id)  # type: ignore[return-value]

    async def add_items(self, source_id: str, descriptors: Iterable[Descriptor]) -> int:
        """Store descriptors for a source, skipping ones already stored.

        Args:
            source_id: Source ID
            descriptors: Raw descriptors

        Returns:
            Number of newly stored items
        """
        now = datetime.now(timezone.utc)
        added = 0

        for descriptor in descriptors:
            if not descriptor.item_id:
                continue
            insert_stmt = sqlite_insert(SourceItem).values(
                source_id=source_id,
                item_key=descriptor.item_id,
                title=descriptor.title or "",
                alt_text=descriptor.alt_text or "",
                url=descriptor.url or "",
                image_url=descriptor.image_url,
                analyzed=False,
                created_at=now,
            )
            result = await self.session.execute(
                insert_stmt.on_conflict_do_nothing(index_elements=["source_id", "item_key"])
            )
            added += result.rowcount or 0

        await self.session.execute(
            update(Source)
            .where(Source.source_id == source_id)
            .values(item_count=Source.item_count + added, updated_at=now)
        )
        await self.session.commit()
        return added

    async def list_items(self, source_id: str, pending_only: bool = False) -> list[SourceItem]:
        """List stored items of a source in submission order."""
        stmt = select(SourceItem).where(SourceItem.source_id == source_id)
        if pending_only:
            stmt = stmt.where(SourceItem.analyzed.is_(False))
        stmt = stmt.order_by(SourceItem.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_items(self, source_id: str | None = None) -> int:
        """Count stored items, for one source or overall."""
        stmt = select(func.count()).select_from(SourceItem)
        if source_id is not None:
            stmt = stmt.where(SourceItem.source_id == source_id)
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def save_analysis(
        self,
        source_id: str,
        graph: TagGraph,
        analyzed_item_ids: list[int],
        visual_ideas: list[dict] | None = None,
        replace: bool = False,
    ) -> Source | None:
        """Persist a new graph, mark items analyzed and clear the error state.

        Args:
            source_id: Source ID
            graph: The source's complete new graph
            analyzed_item_ids: Items whose signals ``graph`` now includes
            visual_ideas: Product ideas from the visual pass, if it ran
            replace: ``graph`` was rebuilt from scratch; every item not in
                ``analyzed_item_ids`` becomes pending again
        """
        source = await self.get_source(source_id)
        if source is None:
            return None

        now = datetime.now(timezone.utc)
        source.graph_json = safe_json_dumps(graph.to_dict())
        if visual_ideas is None and replace:
            visual_ideas = []
        if visual_ideas is not None:
            source.visual_ideas_json = safe_json_dumps(visual_ideas, default="[]")
        source.analyzed_at = now
        source.last_error = None
        source.last_error_at = None

        if replace:
            await self.session.execute(
                update(SourceItem)
                .where(SourceItem.source_id == source_id)
                .values(analyzed=False)
            )
        if analyzed_item_ids:
            await self.session.execute(
                update(SourceItem)
                .where(SourceItem.id.in_(analyzed_item_ids))
                .values(analyzed=True)
            )

        await self.session.commit()
        return source

    async def record_error(self, source_id: str, message: str) -> None:
        """Record the last analysis error on a source."""
        now = datetime.now(timezone.utc)
        await self.session.execute(
            update(Source)
            .where(Source.source_id == source_id)
            .values(last_error=message, last_error_at=now)
        )
        await self.session.commit()

    async def rename(self, source_id: str, label: str) -> bool:
        """Set the editable label. Returns False if the source is missing."""
        result = await self.session.execute(
            update(Source).where(Source.source_id == source_id).values(label=label)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def set_enabled(self, source_id: str, enabled: bool) -> bool:
        """Include or exclude a source from aggregate scopes."""
        result = await self.session.execute(
            update(Source).where(Source.source_id == source_id).values(enabled=enabled)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def delete_source(self, source_id: str) -> bool:
        """Delete a source and all of its stored items.

        Returns:
            True if the source existed
        """
        await self.session.execute(delete(SourceItem).where(SourceItem.source_id == source_id))
        result = await self.session.execute(delete(Source).where(Source.source_id == source_id))
        await self.session.commit()
        return result.rowcount > 0
