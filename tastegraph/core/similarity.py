"""Tag-overlap similarity between sources."""

from itertools import combinations
from typing import Iterable

from tastegraph.core.contracts import SimilarityPair
from tastegraph.core.graph import TagGraph


def jaccard(tags_a: set[str], tags_b: set[str]) -> float:
    """|A ∩ B| / |A ∪ B|, or 0.0 when either set is empty."""
    if not tags_a or not tags_b:
        return 0.0
    intersection = len(tags_a & tags_b)
    union = len(tags_a) + len(tags_b) - intersection
    return intersection / union if union else 0.0


def rank_source_pairs(graphs: Iterable[tuple[str, TagGraph]]) -> list[SimilarityPair]:
    """Score every pair of sources by tag overlap, most similar first.

    Args:
        graphs: (source_id, graph) pairs, e.g. the members of a profile

    Returns:
        Pairs sorted by descending score, then by ids; fewer than two sources yields []
    """
    tag_sets = [(source_id, graph.tag_set()) for source_id, graph in graphs]
    pairs = [
        SimilarityPair(source_a=a_id, source_b=b_id, score=jaccard(a_tags, b_tags))
        for (a_id, a_tags), (b_id, b_tags) in combinations(tag_sets, 2)
    ]
    return sorted(pairs, key=lambda pair: (-pair.score, pair.source_a, pair.source_b))
