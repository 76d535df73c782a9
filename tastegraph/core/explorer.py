"""Graph explorer: emergent concepts from a user-selected tag set."""

from typing import Any, Sequence

from tastegraph.config import config
from tastegraph.core.contracts import EmergentConcept, EmptyGraphError, GenerationClient
from tastegraph.core.graph import TagGraph, normalize_tag
from tastegraph.core.recommendations import idea_with_links
from tastegraph.llm.parser import parse_object
from tastegraph.llm.prompts import COMBINATION, build_combination_prompt
from tastegraph.logging import get_logger

logger = get_logger(__name__)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


async def combine_tags(
    tags: Sequence[str],
    graph: TagGraph,
    client: GenerationClient,
) -> EmergentConcept:
    """Generate the emergent concept of combining ``tags``.

    Raises:
        EmptyGraphError: If ``graph`` has no tags or no usable tags are given
        GenerationTransportError: If the transport fails
        ResponseParseError: If the response holds no JSON object
    """
    if graph.is_empty:
        raise EmptyGraphError("No graph data available; analyze a source first")

    selected = list(dict.fromkeys(t for t in (normalize_tag(tag) for tag in tags) if t))
    if not selected:
        raise EmptyGraphError("Select at least one tag to combine")

    prompt = build_combination_prompt(selected, graph)
    raw = await client.generate([prompt], COMBINATION.system_prompt, config.combine_max_tokens)
    parsed = parse_object(raw)

    ideas = [
        idea_with_links(idea, origin="graph-explorer")
        for idea in parsed.get("giftIdeas") or []
        if isinstance(idea, dict) and idea.get("name")
    ]
    logger.info(f"Combined {len(selected)} tags into {len(ideas)} ideas")

    return EmergentConcept(
        combined_concept=str(parsed.get("combinedConcept") or ""),
        description=str(parsed.get("description") or ""),
        emergent_tags=_str_list(parsed.get("emergentTags")),
        gift_ideas=ideas,
        mood_board=_str_list(parsed.get("moodBoard")),
    )
