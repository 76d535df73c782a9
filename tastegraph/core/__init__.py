"""Core module containing the tag graph model and domain types.

Services that need storage (``scopes``, ``analysis``, ``orchestrator``...)
are imported from their own modules.
"""

from tastegraph.core.contracts import (
    CHANNELS,
    MASTER_SCOPE,
    AnalysisResult,
    Channel,
    Descriptor,
    EmergentConcept,
    EmptyGraphError,
    GenerationClient,
    GenerationFilters,
    JobAlreadyRunning,
    JobState,
    NoItemsToAnalyze,
    NoSuchSource,
    PollResult,
    ProfileNotFound,
    PromptPart,
    RecommendationItem,
    SimilarityPair,
    SourceMeta,
    StartOutcome,
    StartResult,
    TasteGraphError,
    scope_key_for,
)
from tastegraph.core.graph import (
    TagGraph,
    empty_channels,
    flatten_scope,
    merge_into,
    normalize_tag,
)
from tastegraph.core.similarity import jaccard, rank_source_pairs

__all__ = [
    # Contracts/Types
    "CHANNELS",
    "MASTER_SCOPE",
    "AnalysisResult",
    "Channel",
    "Descriptor",
    "EmergentConcept",
    "GenerationClient",
    "GenerationFilters",
    "JobState",
    "PollResult",
    "PromptPart",
    "RecommendationItem",
    "SimilarityPair",
    "SourceMeta",
    "StartOutcome",
    "StartResult",
    "scope_key_for",
    # Errors
    "TasteGraphError",
    "NoSuchSource",
    "NoItemsToAnalyze",
    "ProfileNotFound",
    "JobAlreadyRunning",
    "EmptyGraphError",
    # Graph
    "TagGraph",
    "empty_channels",
    "flatten_scope",
    "merge_into",
    "normalize_tag",
    # Similarity
    "jaccard",
    "rank_source_pairs",
]
