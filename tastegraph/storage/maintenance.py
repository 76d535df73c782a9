"""Whole-store maintenance operations."""

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.logging import get_logger
from tastegraph.storage.models import (
    GenerationJob,
    GenerationResult,
    MasterGraph,
    Profile,
    RateLimitState,
    SavedRecommendation,
    Source,
    SourceItem,
)

logger = get_logger(__name__)

# Children before parents
_CLEAR_ORDER = (
    SourceItem,
    Source,
    Profile,
    MasterGraph,
    SavedRecommendation,
    GenerationJob,
    GenerationResult,
    RateLimitState,
)


async def clear_all_data(session: AsyncSession) -> dict[str, int]:
    """Delete every row of every collection.

    Returns:
        Deleted row count per table
    """
    deleted: dict[str, int] = {}
    for model in _CLEAR_ORDER:
        result = await session.execute(delete(model))
        deleted[model.__tablename__] = result.rowcount or 0
    await session.commit()
    logger.warning(f"Cleared all data: {deleted}")
    return deleted
