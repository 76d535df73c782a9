"""Scope store operations: sources, profiles and the master graph.

Every operation here works on an ``AsyncSession`` and re-reads the record it
mutates right before writing it; concurrent processes get last-writer-wins
at the record level.
"""

import re
import time
from typing import Iterable
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.config import config
from tastegraph.core.contracts import (
    Channel,
    Descriptor,
    NoSuchSource,
    ProfileNotFound,
    SimilarityPair,
    SourceMeta,
)
from tastegraph.core.graph import TagGraph, flatten_scope, merge_into
from tastegraph.core.similarity import rank_source_pairs
from tastegraph.logging import get_logger
from tastegraph.storage.models import MasterGraph, Profile, Source
from tastegraph.storage.repo_graph import GraphRepo
from tastegraph.storage.repo_profiles import ProfilesRepo
from tastegraph.storage.repo_sources import SourcesRepo

logger = get_logger(__name__)

SLUG_MAX_LENGTH = 60
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(text: str | None) -> str:
    """Lower-case, collapse non-alphanumerics to ``-``, trim, cap at 60 chars."""
    slug = _NON_SLUG.sub("-", (text or "").lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def make_source_id(name: str | None, url: str | None = None, now_ms: int | None = None) -> str:
    """Derive a stable source id from the origin identity.

    The first two path segments of ``url`` identify the origin when present,
    so revisiting the same page always yields the same id.
    """
    if url:
        segments = [s for s in urlparse(url).path.split("/") if s]
        if len(segments) >= 2:
            slug = slugify("-".join(segments[:2]))
            if slug:
                return slug

    slug = slugify(name)
    if slug:
        return slug

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"source-{now_ms}"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


async def submit_descriptors(
    session: AsyncSession,
    source_id: str | None,
    meta: SourceMeta,
    items: Iterable[Descriptor],
) -> tuple[Source, int]:
    """Store a batch of raw descriptors for a source. No analysis is run.

    Creates the source on first sight. Items already stored for the source
    are skipped, so resubmitting a batch is a no-op.

    Args:
        session: Database session
        source_id: Source ID, or None to derive it from ``meta``
        meta: Origin name and url
        items: Raw descriptors

    Returns:
        (source, number of newly stored items)
    """
    source_id = source_id or make_source_id(meta.name, meta.url)
    repo = SourcesRepo(session)

    await repo.get_or_create_source(source_id, meta.name or source_id, meta.url)
    added = await repo.add_items(source_id, items)

    source = await repo.get_source(source_id)
    # add_items updates the count with a bulk statement
    await session.refresh(source)
    logger.info(
        f"Stored {added} new items (total {source.item_count})",
        extra={"source_id": source_id},
    )
    return source, added  # type: ignore[return-value]


async def require_source(session: AsyncSession, source_id: str) -> Source:
    source = await SourcesRepo(session).get_source(source_id)
    if source is None:
        raise NoSuchSource(source_id)
    return source


async def rename_source(session: AsyncSession, source_id: str, label: str) -> Source:
    repo = SourcesRepo(session)
    if not await repo.rename(source_id, label):
        raise NoSuchSource(source_id)
    source = await repo.get_source(source_id)
    await session.refresh(source)
    return source  # type: ignore[return-value]


async def set_source_enabled(session: AsyncSession, source_id: str, enabled: bool) -> Source:
    """Include or exclude a source from aggregates, then rebuild the master."""
    repo = SourcesRepo(session)
    if not await repo.set_enabled(source_id, enabled):
        raise NoSuchSource(source_id)
    await rebuild_master(session)
    source = await repo.get_source(source_id)
    await session.refresh(source)
    return source  # type: ignore[return-value]


async def delete_source(session: AsyncSession, source_id: str) -> None:
    """Delete a source with its raw items, then rebuild the master."""
    if not await SourcesRepo(session).delete_source(source_id):
        raise NoSuchSource(source_id)
    logger.info("Deleted source", extra={"source_id": source_id})
    await rebuild_master(session)


# ---------------------------------------------------------------------------
# Master graph
# ---------------------------------------------------------------------------


async def rebuild_master(
    session: AsyncSession,
    enabled_source_ids: list[str] | None = None,
) -> MasterGraph:
    """Recompute and store the master graph from current sources.

    Args:
        session: Database session
        enabled_source_ids: Explicit subset to flatten; None means every
            enabled source

    Returns:
        Stored MasterGraph row
    """
    sources = await SourcesRepo(session).list_sources()

    if enabled_source_ids is None:
        graph = flatten_scope(sources, lambda s: s.enabled)
    else:
        wanted = set(enabled_source_ids)
        graph = flatten_scope(sources, lambda s: s.source_id in wanted)

    master = await GraphRepo(session).save_master(graph, [s.source_id for s in sources])
    logger.debug(f"Rebuilt master graph over {len(sources)} sources")
    return master


async def get_master_graph(session: AsyncSession) -> TagGraph:
    """Cached master graph, rebuilt when nothing is cached yet."""
    master = await GraphRepo(session).get_master()
    if master is None:
        master = await rebuild_master(session)
    return master.tag_graph


async def add_master_tag(
    session: AsyncSession,
    tag: str,
    channel: str = Channel.KEYWORDS.value,
    weight: int = 1,
) -> MasterGraph:
    """Patch one tag into the cached master graph at a fixed weight.

    The next rebuild discards the patch.
    """
    repo = GraphRepo(session)
    graph = (await get_master_graph(session)).with_tag(channel, tag, weight)
    master = await repo.get_master()
    logger.warning(f"Manual master graph patch: set {channel}/{tag!r} = {weight}")
    return await repo.save_master(graph, master.source_ids if master else [])


async def remove_master_tag(session: AsyncSession, tag: str) -> MasterGraph:
    """Delete one tag key from every channel of the cached master graph."""
    repo = GraphRepo(session)
    graph = (await get_master_graph(session)).without_tag(tag)
    master = await repo.get_master()
    logger.warning(f"Manual master graph patch: removed {tag!r} from all channels")
    return await repo.save_master(graph, master.source_ids if master else [])


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


async def require_profile(session: AsyncSession, profile_id: str) -> Profile:
    profile = await ProfilesRepo(session).get_profile(profile_id)
    if profile is None:
        raise ProfileNotFound(profile_id)
    return profile


def profile_graph(profile: Profile, sources: Iterable[Source], bonus: int | None = None) -> TagGraph:
    """Flatten a profile: enabled member sources plus manual tag bonuses.

    Excluded tags are removed from every channel last, so a removed tag
    never survives the flatten whatever the member sources contain.
    """
    if bonus is None:
        bonus = config.manual_tag_bonus

    members = set(profile.source_ids)
    graph = flatten_scope(sources, lambda s: s.source_id in members and s.enabled)

    channels = graph.to_dict()
    merge_into(channels, {Channel.KEYWORDS.value: profile.manual_tags}, increment=bonus)
    return TagGraph(channels).without_tags(profile.excluded_tags)


async def flatten_profile(session: AsyncSession, profile_id: str) -> TagGraph:
    """Graph snapshot of a profile; deleted member sources are dropped."""
    profile = await require_profile(session, profile_id)
    sources = await SourcesRepo(session).get_sources(profile.source_ids)
    return profile_graph(profile, sources)


async def flatten_sources(session: AsyncSession, source_ids: list[str]) -> TagGraph:
    """Graph snapshot of an explicit source subset."""
    sources = await SourcesRepo(session).get_sources(source_ids)
    return flatten_scope(sources)


async def profile_similarities(session: AsyncSession, profile_id: str) -> list[SimilarityPair]:
    """Rank the profile's source pairs by tag overlap."""
    profile = await require_profile(session, profile_id)
    sources = await SourcesRepo(session).get_sources(profile.source_ids)
    return rank_source_pairs((s.source_id, s.tag_graph) for s in sources)
