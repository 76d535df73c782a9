"""Prompt templates and builders for the generation pipeline.

Builders are pure functions of their inputs and return the user prompt
text. The matching system instruction lives on the template.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from tastegraph.core.contracts import Descriptor, GenerationFilters, PromptPart
from tastegraph.core.graph import TagGraph

SUMMARY_TOP_K = 8
COMBINE_CONTEXT_TOP_K = 6

# Channels listed in a recommendation summary, in order
SUMMARY_CHANNELS = (
    ("Themes", "themes"),
    ("Aesthetics", "aesthetics"),
    ("Interests", "interests"),
    ("Categories", "categories"),
    ("Lifestyle", "lifestyle"),
    ("Colors", "colors"),
    ("Keywords", "keywords"),
)


@dataclass(frozen=True)
class PromptTemplate:
    """Definition of one prompt kind."""

    kind: str
    system_prompt: str
    user_prompt_template: str


SIGNAL_EXTRACTION = PromptTemplate(
    kind="signal_extraction",
    system_prompt=(
        "You extract aesthetic taste and preference signals from saved content "
        "metadata for gift recommendation purposes. Always respond with only valid JSON."
    ),
    user_prompt_template="""Analyze these saved items and extract taste/preference signals.

Items:
{descriptors}

Respond ONLY with valid JSON (no markdown, no extra text):
{{"themes":[],"aesthetics":[],"categories":[],"lifestyle":[],"interests":[],"colors":[],"keywords":[]}}""",
)

VISUAL_SIGNAL = PromptTemplate(
    kind="visual_signal",
    system_prompt=(
        "You are a visual taste analyst helping curate personalized gift ideas "
        "from saved imagery. Always respond with only valid JSON."
    ),
    user_prompt_template="""Based on these images and their titles, analyze:
- Visual aesthetics (color palettes, textures, moods, design styles)
- Specific product categories visible or implied
- Lifestyle signals
- Concrete gift ideas this person would love (at most {idea_cap})

Images:
{images}

Respond ONLY with valid JSON:
{{
  "visualAesthetics": ["..."],
  "productCategories": ["..."],
  "lifestyleSignals": ["..."],
  "specificProductIdeas": [
    {{"name": "...", "description": "...", "searchQuery": "...", "priceRange": "..."}}
  ],
  "dominantColors": ["..."],
  "moodKeywords": ["..."]
}}""",
)

RECOMMENDATION = PromptTemplate(
    kind="recommendation",
    system_prompt=(
        "You are a thoughtful, creative gift curator who matches gifts to personal "
        "taste profiles. Always respond with valid JSON only."
    ),
    user_prompt_template="""You're a thoughtful gift curator. Based on this person's taste profile:

{summary}

Suggest {count} specific, creative gift ideas{constraints}.

Each gift should feel personally curated, not generic. Think about what someone with this exact taste profile would genuinely love.

Respond ONLY with a valid JSON array of exactly {count} objects:
[{{
  "name": "...",
  "description": "...",
  "price_range": "...",
  "category": "...",
  "match_reason": "why this fits their taste",
  "search_query": "specific search terms",
  "etsy_search": "etsy-specific query or null"
}}]""",
)

COMBINATION = PromptTemplate(
    kind="combination",
    system_prompt=(
        "You are a creative taste analyst who finds unexpected and delightful "
        "connections between aesthetic preferences. Always respond with valid JSON."
    ),
    user_prompt_template="""A user is exploring their taste graph and has selected these tags to combine:
Tags selected: {tags}

Their broader taste graph context:
{context}

Generate creative new concepts, gift ideas, or taste descriptors that emerge from combining these tags together. Think laterally and creatively.

Respond ONLY with valid JSON:
{{
  "combinedConcept": "a poetic name for this combination",
  "description": "what this taste combination says about the person",
  "emergentTags": ["new tag ideas that emerge from the combination"],
  "giftIdeas": [
    {{"name": "...", "description": "...", "searchQuery": "...", "priceRange": "..."}}
  ],
  "moodBoard": ["evocative words that capture this vibe"]
}}""",
)

VISUAL_IDEA_CAP = 5


def _quote(value: str | None) -> str:
    return (value or "").replace('"', "'")


def build_signal_extraction_prompt(descriptors: Sequence[Descriptor]) -> str:
    """Prompt asking for the seven channel arrays for a batch of descriptors."""
    lines = "\n".join(
        f'Item {i + 1}: title="{_quote(d.title)}", alt="{_quote(d.alt_text)}", url="{_quote(d.url)}"'
        for i, d in enumerate(descriptors)
    )
    return SIGNAL_EXTRACTION.user_prompt_template.format(descriptors=lines)


def select_image_descriptors(descriptors: Iterable[Descriptor], cap: int) -> list[Descriptor]:
    """First ``cap`` descriptors that carry an image reference."""
    if cap <= 0:
        return []
    selected: list[Descriptor] = []
    for descriptor in descriptors:
        if descriptor.image_url:
            selected.append(descriptor)
            if len(selected) >= cap:
                break
    return selected


def build_visual_signal_prompt(descriptors: Sequence[Descriptor], cap: int) -> str:
    """Prompt for visual signals over at most ``cap`` image references.

    Inline (``data:``) payloads are referenced by position only; their bytes
    travel as image parts, see ``visual_prompt_parts``.
    """
    selected = select_image_descriptors(descriptors, cap)
    lines = []
    for i, descriptor in enumerate(selected):
        ref = descriptor.image_url or ""
        label = f"attached image {i + 1}" if ref.startswith("data:") else ref
        title = descriptor.title or descriptor.alt_text or "(no title)"
        lines.append(f"Image {i + 1}: {label}\nTitle: {title}")
    return VISUAL_SIGNAL.user_prompt_template.format(
        images="\n".join(lines), idea_cap=VISUAL_IDEA_CAP
    )


def visual_prompt_parts(descriptors: Sequence[Descriptor], cap: int) -> list[PromptPart]:
    """Image parts followed by the visual-signal prompt text."""
    selected = select_image_descriptors(descriptors, cap)
    parts = [PromptPart(image_url=d.image_url) for d in selected]
    parts.append(PromptPart(text=build_visual_signal_prompt(selected, cap)))
    return parts


def summarize_graph(graph: TagGraph, k: int = SUMMARY_TOP_K) -> str:
    """One ``Label: tag, tag`` line per non-empty summary channel."""
    top = graph.top_tags(k)
    lines = [
        f"{label}: {', '.join(top[channel])}"
        for label, channel in SUMMARY_CHANNELS
        if top[channel]
    ]
    return "\n".join(lines)


def _constraints(filters: GenerationFilters | None) -> str:
    if filters is None:
        return ""
    text = ""
    if filters.occasion:
        text += f" for {filters.occasion}"
    if filters.budget and filters.budget != "any":
        text += f", budget: {filters.budget}"
    if filters.recipient_age and filters.recipient_age != "adult":
        text += f", recipient: {filters.recipient_age}"
    return text


def build_recommendation_prompt(
    graph: TagGraph,
    count: int,
    filters: GenerationFilters | None = None,
) -> str:
    """Prompt requesting exactly ``count`` recommendation objects."""
    return RECOMMENDATION.user_prompt_template.format(
        summary=summarize_graph(graph) or "(no taste signals yet)",
        count=count,
        constraints=_constraints(filters),
    )


def build_combination_prompt(tags: Sequence[str], graph: TagGraph | Mapping) -> str:
    """Prompt for the emergent concept of a user-selected tag set."""
    snapshot = graph if isinstance(graph, TagGraph) else TagGraph.from_dict(graph)
    top = snapshot.top_tags(COMBINE_CONTEXT_TOP_K)
    context = "\n".join(f"{channel}: {', '.join(names)}" for channel, names in top.items())
    return COMBINATION.user_prompt_template.format(tags=", ".join(tags), context=context)
