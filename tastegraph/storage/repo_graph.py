"""Repository for the cached master graph."""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.core.contracts import MASTER_SCOPE
from tastegraph.core.graph import TagGraph
from tastegraph.storage.json_utils import safe_json_dumps
from tastegraph.storage.models import MasterGraph


class GraphRepo:
    """Repository for the master graph singleton."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_master(self) -> MasterGraph | None:
        stmt = select(MasterGraph).where(MasterGraph.key == MASTER_SCOPE)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_master(self, graph: TagGraph, source_ids: list[str]) -> MasterGraph:
        """Replace the cached master graph (upsert).

        Args:
            graph: Freshly flattened snapshot
            source_ids: IDs of every known source at rebuild time

        Returns:
            Stored MasterGraph row
        """
        now = datetime.now(timezone.utc)
        values = {
            "graph_json": safe_json_dumps(graph.to_dict()),
            "source_ids_json": safe_json_dumps(source_ids, default="[]"),
            "updated_at": now,
        }
        insert_stmt = sqlite_insert(MasterGraph).values(key=MASTER_SCOPE, **values)
        await self.session.execute(
            insert_stmt.on_conflict_do_update(index_elements=["key"], set_=values)
        )
        await self.session.commit()

        master = await self.get_master()
        # The upsert bypasses the identity map
        await self.session.refresh(master)
        return master  # type: ignore[return-value]
