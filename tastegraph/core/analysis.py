"""Source analysis: turn stored descriptors into tag-graph weight.

Each stored item contributes to its source's graph exactly once. Pending
items are analyzed in batches, in submission order, and only marked as
analyzed together with the graph that includes them.
"""

from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.config import config
from tastegraph.core.contracts import (
    AnalysisResult,
    Descriptor,
    GenerationClient,
    NoItemsToAnalyze,
)
from tastegraph.core.graph import TagGraph
from tastegraph.core.recommendations import idea_with_links
from tastegraph.core.scopes import rebuild_master, require_source
from tastegraph.llm.llm_adapter import GenerationTransportError
from tastegraph.llm.parser import ResponseParseError, parse_object
from tastegraph.llm.prompts import (
    SIGNAL_EXTRACTION,
    VISUAL_IDEA_CAP,
    VISUAL_SIGNAL,
    build_signal_extraction_prompt,
    select_image_descriptors,
    visual_prompt_parts,
)
from tastegraph.logging import get_logger
from tastegraph.storage.models import SourceItem
from tastegraph.storage.repo_sources import SourcesRepo

logger = get_logger(__name__)

# Visual response key -> graph channel
VISUAL_CHANNEL_MAP = {
    "moodKeywords": "themes",
    "visualAesthetics": "aesthetics",
    "productCategories": "categories",
    "lifestyleSignals": "lifestyle",
    "dominantColors": "colors",
}


def _descriptor(item: SourceItem) -> Descriptor:
    return Descriptor(
        item_id=item.item_key,
        title=item.title,
        alt_text=item.alt_text,
        url=item.url,
        image_url=item.image_url,
    )


def _batches(items: Sequence[SourceItem], size: int) -> list[Sequence[SourceItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def visual_signals(parsed: dict[str, Any]) -> dict[str, list]:
    """Map a visual-signal response onto graph channels."""
    signals: dict[str, list] = {}
    for key, channel in VISUAL_CHANNEL_MAP.items():
        values = parsed.get(key)
        if isinstance(values, list):
            signals.setdefault(channel, []).extend(values)
    return signals


async def extract_batch_signals(
    client: GenerationClient,
    descriptors: Sequence[Descriptor],
) -> dict[str, Any]:
    """Run the signal-extraction prompt for one batch.

    Raises:
        GenerationTransportError: If the transport fails
        ResponseParseError: If no JSON object can be recovered
    """
    prompt = build_signal_extraction_prompt(descriptors)
    raw = await client.generate([prompt], SIGNAL_EXTRACTION.system_prompt, config.signal_max_tokens)
    return parse_object(raw)


async def extract_visual_signals(
    client: GenerationClient,
    descriptors: Sequence[Descriptor],
) -> tuple[dict[str, list], list[dict[str, Any]]] | None:
    """Run the visual-signal prompt over the first image references.

    Returns:
        (channel signals, product ideas with links), or None when there are
        no images or the visual pass failed

    Raises:
        GenerationTransportError: Only when rate limited
    """
    cap = config.visual_image_cap
    if not select_image_descriptors(descriptors, cap):
        return None

    try:
        raw = await client.generate(
            visual_prompt_parts(descriptors, cap),
            VISUAL_SIGNAL.system_prompt,
            config.visual_max_tokens,
        )
        parsed = parse_object(raw)
    except GenerationTransportError as e:
        if e.rate_limited:
            raise
        logger.warning(f"Visual analysis failed, skipping: {e}")
        return None
    except ResponseParseError as e:
        logger.warning(f"Visual analysis unparseable, skipping: {e}")
        return None

    ideas = [
        idea_with_links(idea, origin="visual", google_suffix="buy online")
        for idea in (parsed.get("specificProductIdeas") or [])[:VISUAL_IDEA_CAP]
        if isinstance(idea, dict) and idea.get("name")
    ]
    return visual_signals(parsed), ideas


async def _analyze_pending(
    session: AsyncSession,
    source_id: str,
    client: GenerationClient,
    reset: bool = False,
) -> TagGraph:
    repo = SourcesRepo(session)
    source = await require_source(session, source_id)
    # Pick up bulk item updates from earlier saves
    await session.refresh(source)

    if await repo.count_items(source_id) == 0:
        raise NoItemsToAnalyze(source_id)

    pending = await repo.list_items(source_id, pending_only=not reset)
    if not pending:
        logger.info("No pending items, graph unchanged", extra={"source_id": source_id})
        if source.last_error:
            await repo.save_analysis(source_id, source.tag_graph, [])
        return source.tag_graph

    graph = TagGraph.empty() if reset else source.tag_graph
    analyzed_ids: list[int] = []
    parse_error: ResponseParseError | None = None

    for batch in _batches(pending, config.analysis_batch_size):
        try:
            signals = await extract_batch_signals(client, [_descriptor(i) for i in batch])
        except ResponseParseError as e:
            logger.warning(
                f"Skipping unparseable batch of {len(batch)} items",
                extra={"source_id": source_id},
            )
            parse_error = e
            continue
        graph = graph.merged(signals)
        analyzed_ids.extend(item.id for item in batch)

    if not analyzed_ids and parse_error is not None:
        raise parse_error

    visual_ideas = None
    if config.visual_analysis_enabled:
        visual = await extract_visual_signals(client, [_descriptor(i) for i in pending])
        if visual is not None:
            signals, visual_ideas = visual
            graph = graph.merged(signals)

    await repo.save_analysis(source_id, graph, analyzed_ids, visual_ideas, replace=reset)
    logger.info(
        f"Analyzed {len(analyzed_ids)}/{len(pending)} pending items",
        extra={"source_id": source_id},
    )
    return graph


async def analyze_source(
    session: AsyncSession,
    source_id: str,
    client: GenerationClient,
    rebuild: bool = True,
    reset: bool = False,
) -> TagGraph:
    """Analyze a source's pending items and merge them into its graph.

    Transport and parse failures are recorded on the source (cleared by the
    next success) and re-raised.

    Args:
        session: Database session
        source_id: Source ID
        client: Text generation client
        rebuild: Rebuild the master graph afterwards
        reset: Rebuild the graph from all items instead of the pending ones;
            the old graph is kept until the new one is saved

    Returns:
        The source's new graph snapshot

    Raises:
        NoSuchSource: If the source does not exist
        NoItemsToAnalyze: If the source has no stored items
        GenerationTransportError: If the transport fails
        ResponseParseError: If no batch could be parsed
    """
    try:
        graph = await _analyze_pending(session, source_id, client, reset=reset)
    except (GenerationTransportError, ResponseParseError) as e:
        logger.error(f"Analysis failed: {e}", extra={"source_id": source_id})
        await SourcesRepo(session).record_error(source_id, str(e))
        raise

    if rebuild:
        await rebuild_master(session)
    return graph


async def analyze_all(
    session: AsyncSession,
    client: GenerationClient,
    reset: bool = False,
) -> list[AnalysisResult]:
    """Analyze every source independently and report per-source results.

    Sources without items are skipped. After a rate limit the remaining
    sources are skipped rather than attempted.

    Args:
        session: Database session
        client: Text generation client
        reset: Empty each graph and re-analyze all items from scratch
    """
    repo = SourcesRepo(session)
    results: list[AnalysisResult] = []
    rate_limit: GenerationTransportError | None = None

    for source in await repo.list_sources():
        source_id = source.source_id
        if await repo.count_items(source_id) == 0:
            results.append(AnalysisResult(source_id, "skipped", "No items stored"))
            continue
        if rate_limit is not None:
            results.append(AnalysisResult(source_id, "skipped", str(rate_limit)))
            continue

        try:
            await analyze_source(session, source_id, client, rebuild=False, reset=reset)
            results.append(AnalysisResult(source_id, "ok"))
        except GenerationTransportError as e:
            if e.rate_limited:
                rate_limit = e
            results.append(AnalysisResult(source_id, "error", str(e)))
        except ResponseParseError as e:
            results.append(AnalysisResult(source_id, "error", str(e)))

    await rebuild_master(session)
    ok = sum(1 for r in results if r.status == "ok")
    logger.info(f"Analyzed {ok}/{len(results)} sources (reset={reset})")
    return results


async def reanalyze_all(session: AsyncSession, client: GenerationClient) -> list[AnalysisResult]:
    """Rebuild every source graph from all of its stored items."""
    return await analyze_all(session, client, reset=True)
