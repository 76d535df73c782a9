"""Storage module for database operations."""

from tastegraph.storage.db import (
    Base,
    close_engine,
    create_all,
    get_engine,
    get_session_factory,
)
from tastegraph.storage.json_utils import load_str_list, safe_json_dumps, safe_json_loads
from tastegraph.storage.maintenance import clear_all_data
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
from tastegraph.storage.repo_graph import GraphRepo
from tastegraph.storage.repo_jobs import JobsRepo
from tastegraph.storage.repo_profiles import ProfilesRepo
from tastegraph.storage.repo_saved import SavedRepo
from tastegraph.storage.repo_sources import SourcesRepo

__all__ = [
    # Database
    "Base",
    "create_all",
    "get_engine",
    "get_session_factory",
    "close_engine",
    # JSON utilities
    "safe_json_dumps",
    "safe_json_loads",
    "load_str_list",
    # Maintenance
    "clear_all_data",
    # Models
    "Source",
    "SourceItem",
    "Profile",
    "MasterGraph",
    "SavedRecommendation",
    "GenerationJob",
    "GenerationResult",
    "RateLimitState",
    # Repositories
    "SourcesRepo",
    "ProfilesRepo",
    "GraphRepo",
    "SavedRepo",
    "JobsRepo",
]
