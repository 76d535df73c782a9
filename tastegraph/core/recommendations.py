"""Recommendation generation from a flattened graph snapshot."""

import uuid
from datetime import datetime
from typing import Any
from urllib.parse import quote_plus

from tastegraph.config import config
from tastegraph.core.clock import utc_now
from tastegraph.core.contracts import GenerationClient, GenerationFilters, RecommendationItem
from tastegraph.core.graph import TagGraph
from tastegraph.llm.parser import ResponseParseError, parse_array
from tastegraph.llm.prompts import RECOMMENDATION, build_recommendation_prompt
from tastegraph.logging import get_logger

logger = get_logger(__name__)

AMAZON_SEARCH_URL = "https://www.amazon.com/s?k={query}"
ETSY_SEARCH_URL = "https://www.etsy.com/search?q={query}"
GOOGLE_SHOPPING_URL = "https://www.google.com/search?q={query}&tbm=shop"


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def shopping_links(
    name: str,
    search_query: str | None = None,
    etsy_query: str | None = None,
    google_suffix: str = "buy",
) -> dict[str, str | None]:
    """Build shopping search links for a product name.

    Args:
        name: Product name
        search_query: Preferred search terms (falls back to ``name``)
        etsy_query: Etsy-specific terms; no Etsy link when empty
        google_suffix: Words appended to the name for Google Shopping

    Returns:
        Mapping of store -> url (``etsy`` may be None)
    """
    query = search_query or name
    return {
        "amazon": AMAZON_SEARCH_URL.format(query=quote_plus(query)),
        "etsy": ETSY_SEARCH_URL.format(query=quote_plus(etsy_query)) if etsy_query else None,
        "google": GOOGLE_SHOPPING_URL.format(query=quote_plus(f"{name} {google_suffix}".strip())),
    }


def idea_with_links(idea: dict[str, Any], origin: str, google_suffix: str = "buy") -> dict[str, Any]:
    """Attach links to a product-idea object (``name``/``searchQuery`` keys).

    Idea objects always get an Etsy link, searched by the same terms.
    """
    name = _text(idea.get("name"))
    query = _text(idea.get("searchQuery")) or name
    enriched = dict(idea)
    enriched["links"] = shopping_links(name, query, etsy_query=query, google_suffix=google_suffix)
    enriched["origin"] = origin
    return enriched


def to_recommendation(
    raw: Any,
    generated_at: datetime,
    profile_id: str | None = None,
) -> RecommendationItem | None:
    """Convert one parsed generator object; None if it is unusable."""
    if not isinstance(raw, dict):
        return None
    name = _text(raw.get("name"))
    if not name:
        return None

    search_query = _text(raw.get("search_query")) or None
    etsy_query = _text(raw.get("etsy_search"))
    if etsy_query.lower() == "null":
        etsy_query = ""

    return RecommendationItem(
        id=uuid.uuid4().hex,
        name=name,
        description=_text(raw.get("description")),
        price_range=_text(raw.get("price_range")),
        category=_text(raw.get("category")),
        match_reason=_text(raw.get("match_reason")),
        links=shopping_links(name, search_query, etsy_query or None),
        generated_at=generated_at,
        search_query=search_query,
        profile_id=profile_id,
    )


async def generate_recommendations(
    client: GenerationClient,
    graph: TagGraph,
    filters: GenerationFilters | None = None,
    count: int | None = None,
    profile_id: str | None = None,
) -> list[RecommendationItem]:
    """Ask the generator for ``count`` recommendations over ``graph``.

    Args:
        client: Text generation client
        graph: Flattened scope snapshot
        filters: Occasion/budget/recipient filters
        count: Number of objects to request (default RECS_COUNT)
        profile_id: Originating profile, stamped on each item

    Returns:
        Recommendation items in generator order

    Raises:
        GenerationTransportError: If the transport fails
        ResponseParseError: If no usable recommendation can be recovered
    """
    count = count or config.recs_count
    prompt = build_recommendation_prompt(graph, count, filters)

    raw = await client.generate([prompt], RECOMMENDATION.system_prompt, config.recs_max_tokens)
    parsed = parse_array(raw)

    generated_at = utc_now()
    items = []
    for entry in parsed:
        item = to_recommendation(entry, generated_at, profile_id)
        if item is not None:
            items.append(item)

    if not items:
        raise ResponseParseError("No usable recommendation objects in response", raw_text=raw)

    if len(items) < count:
        logger.info(f"Recovered {len(items)}/{count} recommendations")
    return items
