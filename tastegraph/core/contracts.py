"""Domain contracts and type definitions."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, Sequence

MASTER_SCOPE = "master"


class Channel(str, Enum):
    """Named tag channels of a taste graph."""

    THEMES = "themes"
    AESTHETICS = "aesthetics"
    CATEGORIES = "categories"
    LIFESTYLE = "lifestyle"
    INTERESTS = "interests"
    COLORS = "colors"
    KEYWORDS = "keywords"


CHANNELS: tuple[str, ...] = tuple(channel.value for channel in Channel)


class JobState(str, Enum):
    """Lifecycle states of a generation job, as seen by a reader."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StartOutcome(str, Enum):
    """Outcome of a generation start request."""

    ACCEPTED = "accepted"
    ALREADY_RUNNING = "already_running"
    RATE_LIMITED = "rate_limited"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TasteGraphError(Exception):
    """Base class for domain errors."""


class NoSuchSource(TasteGraphError):
    """Raised when a source id does not exist."""

    def __init__(self, source_id: str):
        super().__init__(f"Source not found: {source_id}")
        self.source_id = source_id


class NoItemsToAnalyze(TasteGraphError):
    """Raised when a source has no stored items."""

    def __init__(self, source_id: str):
        super().__init__(f"No items stored for source: {source_id}")
        self.source_id = source_id


class ProfileNotFound(TasteGraphError):
    """Raised when a profile id does not exist."""

    def __init__(self, profile_id: str):
        super().__init__(f"Profile not found: {profile_id}")
        self.profile_id = profile_id


class JobAlreadyRunning(TasteGraphError):
    """Raised when a scope already has an in-flight generation job."""

    def __init__(self, scope_key: str):
        super().__init__(f"Generation already running for scope: {scope_key}")
        self.scope_key = scope_key


class EmptyGraphError(TasteGraphError):
    """Raised when an operation needs graph data and none exists."""


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass
class Descriptor:
    """One raw content descriptor submitted for a source."""

    item_id: str
    title: str = ""
    alt_text: str = ""
    url: str = ""
    image_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Descriptor":
        return cls(
            item_id=str(data.get("item_id") or data.get("id") or data.get("url") or ""),
            title=data.get("title") or "",
            alt_text=data.get("alt_text") or data.get("alt") or "",
            url=data.get("url") or "",
            image_url=data.get("image_url") or None,
        )


@dataclass
class SourceMeta:
    """Origin identity of a source as reported by the caller."""

    name: str
    url: str = ""


@dataclass
class GenerationFilters:
    """Optional recommendation filters."""

    occasion: str | None = None
    budget: str | None = None
    recipient_age: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GenerationFilters":
        data = data or {}
        return cls(
            occasion=data.get("occasion") or None,
            budget=data.get("budget") or None,
            recipient_age=data.get("recipient_age") or None,
        )


@dataclass
class PromptPart:
    """One part of a multi-part prompt: text or an image reference."""

    text: str | None = None
    image_url: str | None = None

    @property
    def is_image(self) -> bool:
        return self.image_url is not None


@dataclass
class RecommendationItem:
    """A generated recommendation with shopping links."""

    id: str
    name: str
    description: str
    price_range: str
    category: str
    match_reason: str
    links: dict[str, str | None]
    generated_at: datetime
    search_query: str | None = None
    profile_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = self.generated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecommendationItem":
        generated_at = data.get("generated_at")
        if isinstance(generated_at, str):
            generated_at = datetime.fromisoformat(generated_at)
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            price_range=data.get("price_range", ""),
            category=data.get("category", ""),
            match_reason=data.get("match_reason", ""),
            links=dict(data.get("links") or {}),
            generated_at=generated_at,
            search_query=data.get("search_query"),
            profile_id=data.get("profile_id"),
        )


@dataclass
class EmergentConcept:
    """Result of combining a set of tags."""

    combined_concept: str
    description: str
    emergent_tags: list[str] = field(default_factory=list)
    gift_ideas: list[dict[str, Any]] = field(default_factory=list)
    mood_board: list[str] = field(default_factory=list)


@dataclass
class AnalysisResult:
    """Per-source outcome of a batch analysis."""

    source_id: str
    status: str  # "ok" | "error" | "skipped"
    error: str | None = None


@dataclass
class StartResult:
    """Answer to a generation start request."""

    outcome: StartOutcome
    scope_key: str
    resume_at: datetime | None = None


@dataclass
class PollResult:
    """Reader's view of a scope's generation job."""

    state: JobState
    scope_key: str
    items: list[RecommendationItem] = field(default_factory=list)
    message: str | None = None
    started_at: datetime | None = None
    resume_at: datetime | None = None


@dataclass
class SimilarityPair:
    """Jaccard overlap between two sources."""

    source_a: str
    source_b: str
    score: float


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class GenerationClient(Protocol):
    """Protocol for the external text-generation capability."""

    async def generate(
        self,
        prompt_parts: Sequence[PromptPart | str],
        system_instruction: str,
        max_output_size: int,
    ) -> str:
        """Return free text for an already assembled prompt.

        Raises:
            GenerationTransportError: On any transport failure
        """
        ...


def scope_key_for(profile_id: str | None) -> str:
    """Scope key of a generation job: the profile id, or ``master``."""
    return profile_id or MASTER_SCOPE
