"""SQLAlchemy ORM models for the durable side-store."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tastegraph.core.graph import TagGraph
from tastegraph.storage.db import Base
from tastegraph.storage.json_utils import load_str_list, safe_json_loads


class Source(Base):
    """One content origin and its accumulated tag graph."""

    __tablename__ = "sources"

    source_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    url: Mapped[str] = mapped_column(String, nullable=False, default="")
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    graph_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    visual_ideas_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    items: Mapped[list["SourceItem"]] = relationship(
        "SourceItem", back_populates="source", cascade="all, delete-orphan"
    )

    @property
    def tag_graph(self) -> TagGraph:
        return TagGraph.from_dict(safe_json_loads(self.graph_json))

    @property
    def visual_ideas(self) -> list[dict]:
        ideas = safe_json_loads(self.visual_ideas_json, default=[])
        return ideas if isinstance(ideas, list) else []


class SourceItem(Base):
    """Raw content descriptor stored for a source."""

    __tablename__ = "source_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(
        String, ForeignKey("sources.source_id", ondelete="CASCADE"), nullable=False
    )
    item_key: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    alt_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(String, nullable=False, default="")
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    analyzed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    source: Mapped["Source"] = relationship("Source", back_populates="items")

    __table_args__ = (
        UniqueConstraint("source_id", "item_key", name="uq_source_items_source_key"),
        Index("ix_source_items_source_analyzed", "source_id", "analyzed"),
    )


class Profile(Base):
    """Named grouping of sources plus manual tags."""

    __tablename__ = "profiles"

    profile_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    source_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    manual_tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # Tags removed by the user; suppressed in every channel on flatten
    excluded_tags_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    @property
    def source_ids(self) -> list[str]:
        return load_str_list(self.source_ids_json)

    @property
    def manual_tags(self) -> list[str]:
        return load_str_list(self.manual_tags_json)

    @property
    def excluded_tags(self) -> list[str]:
        return load_str_list(self.excluded_tags_json)


class MasterGraph(Base):
    """Cached flatten of all enabled sources (singleton row ``master``)."""

    __tablename__ = "master_graph"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    graph_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    source_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    @property
    def tag_graph(self) -> TagGraph:
        return TagGraph.from_dict(safe_json_loads(self.graph_json))

    @property
    def source_ids(self) -> list[str]:
        return load_str_list(self.source_ids_json)


class SavedRecommendation(Base):
    """Recommendation kept by the user, independent of its scope."""

    __tablename__ = "saved_recommendations"

    rec_id: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    saved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_saved_recommendations_profile", "profile_id"),)


class GenerationJob(Base):
    """In-flight marker: at most one row per scope."""

    __tablename__ = "generation_jobs"

    scope_key: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    filters_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    source_ids_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class GenerationResult(Base):
    """Completed payload of the last successful job of a scope."""

    __tablename__ = "generation_results"

    scope_key: Mapped[str] = mapped_column(String, primary_key=True)
    items_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RateLimitState(Base):
    """Absolute time before which new generation jobs are refused."""

    __tablename__ = "rate_limits"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    resume_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
