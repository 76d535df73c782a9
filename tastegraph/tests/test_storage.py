"""Tests for storage layer."""

from datetime import datetime, timedelta, timezone

import pytest

from tastegraph.core.clock import ensure_utc
from tastegraph.core.contracts import Descriptor
from tastegraph.core.graph import TagGraph
from tastegraph.storage import (
    GraphRepo,
    JobsRepo,
    ProfilesRepo,
    SavedRepo,
    SourcesRepo,
    clear_all_data,
)


def _items(*keys):
    return [Descriptor(item_id=k, title=f"title {k}") for k in keys]


@pytest.mark.anyio
async def test_source_create_and_get(session):
    """Test source creation and retrieval."""
    repo = SourcesRepo(session)

    source = await repo.get_or_create_source("jane-cozy", "Cozy Home", "https://example.com/jane/cozy/")
    assert source.source_id == "jane-cozy"
    assert source.label == "Cozy Home"
    assert source.enabled is True
    assert source.tag_graph.is_empty

    # Getting same source should return existing
    again = await repo.get_or_create_source("jane-cozy", "Other Name")
    assert again.name == "Cozy Home"


@pytest.mark.anyio
async def test_add_items_is_idempotent(session):
    repo = SourcesRepo(session)
    await repo.get_or_create_source("s1", "S1")

    assert await repo.add_items("s1", _items("a", "b")) == 2
    assert await repo.add_items("s1", _items("b", "c")) == 1

    source = await repo.get_source("s1")
    await session.refresh(source)
    assert source.item_count == 3
    assert await repo.count_items("s1") == 3
    assert [i.item_key for i in await repo.list_items("s1")] == ["a", "b", "c"]


@pytest.mark.anyio
async def test_save_analysis_marks_items_and_clears_error(session):
    repo = SourcesRepo(session)
    await repo.get_or_create_source("s1", "S1")
    await repo.add_items("s1", _items("a", "b"))
    await repo.record_error("s1", "boom")

    items = await repo.list_items("s1", pending_only=True)
    graph = TagGraph.from_signals({"themes": ["cozy"]})
    source = await repo.save_analysis("s1", graph, [items[0].id])

    assert source.last_error is None
    assert source.analyzed_at is not None
    assert source.tag_graph.weight("themes", "cozy") == 1
    pending = await repo.list_items("s1", pending_only=True)
    assert [i.item_key for i in pending] == ["b"]


@pytest.mark.anyio
async def test_replace_analysis_and_delete_source(session):
    repo = SourcesRepo(session)
    await repo.get_or_create_source("s1", "S1")
    await repo.add_items("s1", _items("a", "b"))
    items = await repo.list_items("s1")
    await repo.save_analysis(
        "s1",
        TagGraph.from_signals({"colors": ["red"]}),
        [i.id for i in items],
        [{"name": "Red mug"}],
    )

    await repo.save_analysis(
        "s1", TagGraph.from_signals({"themes": ["cozy"]}), [items[0].id], replace=True
    )
    source = await repo.get_source("s1")
    await session.refresh(source)
    assert source.tag_graph.weight("colors", "red") == 0
    assert source.tag_graph.weight("themes", "cozy") == 1
    assert source.visual_ideas == []
    assert [i.item_key for i in await repo.list_items("s1", pending_only=True)] == ["b"]

    assert await repo.delete_source("s1") is True
    assert await repo.get_source("s1") is None
    assert await repo.count_items("s1") == 0
    assert await repo.delete_source("s1") is False


@pytest.mark.anyio
async def test_get_sources_preserves_order_and_drops_missing(session):
    repo = SourcesRepo(session)
    for source_id in ("a", "b", "c"):
        await repo.get_or_create_source(source_id, source_id)

    sources = await repo.get_sources(["c", "missing", "a"])

    assert [s.source_id for s in sources] == ["c", "a"]


@pytest.mark.anyio
async def test_profile_manual_tags(session):
    repo = ProfilesRepo(session)
    profile = await repo.create_profile("Mom", ["s1"], [" Gardening "])
    assert profile.manual_tags == ["gardening"]

    profile = await repo.add_manual_tag(profile.profile_id, "Tea")
    assert profile.manual_tags == ["gardening", "tea"]

    profile = await repo.remove_manual_tag(profile.profile_id, "gardening")
    assert profile.manual_tags == ["tea"]
    assert profile.excluded_tags == ["gardening"]

    profile = await repo.add_manual_tag(profile.profile_id, "gardening")
    assert profile.excluded_tags == []

    assert await repo.add_manual_tag("missing", "x") is None


@pytest.mark.anyio
async def test_profile_update_and_delete(session):
    repo = ProfilesRepo(session)
    profile = await repo.create_profile("Dad")

    updated = await repo.update_profile(profile.profile_id, name="Father", source_ids=["a", "a", "b"])
    assert updated.name == "Father"
    assert updated.source_ids == ["a", "b"]

    assert await repo.delete_profile(profile.profile_id) is True
    assert await repo.get_profile(profile.profile_id) is None
    assert await repo.update_profile(profile.profile_id, name="x") is None


@pytest.mark.anyio
async def test_master_graph_upsert(session):
    repo = GraphRepo(session)
    assert await repo.get_master() is None

    await repo.save_master(TagGraph.from_signals({"themes": ["cozy"]}), ["a"])
    master = await repo.save_master(TagGraph.from_signals({"themes": ["bold"]}), ["a", "b"])

    assert master.tag_graph.weight("themes", "bold") == 1
    assert master.tag_graph.weight("themes", "cozy") == 0
    assert master.source_ids == ["a", "b"]


@pytest.mark.anyio
async def test_saved_recommendations(session):
    repo = SavedRepo(session)
    await repo.save("r1", {"name": "Mug"}, profile_id="p1")
    await repo.save("r2", {"name": "Vase"})

    all_saved = await repo.list_saved()
    assert {s["id"] for s in all_saved} == {"r1", "r2"}

    mine = await repo.list_saved(profile_id="p1")
    assert [s["name"] for s in mine] == ["Mug"]

    assert await repo.delete("r1") is True
    assert await repo.delete("r1") is False


@pytest.mark.anyio
async def test_job_marker_is_exclusive(session):
    repo = JobsRepo(session)
    started = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    assert await repo.create_marker("master", started) is True
    assert await repo.create_marker("master", started + timedelta(seconds=1)) is False

    # Only the job that created the marker may clear it by start time
    assert await repo.delete_marker("master", started + timedelta(seconds=1)) is False
    assert await repo.delete_marker("master", started) is True
    assert await repo.get_marker("master") is None


@pytest.mark.anyio
async def test_delete_stale_markers(session):
    repo = JobsRepo(session)
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    await repo.create_marker("old", now - timedelta(minutes=10))
    await repo.create_marker("fresh", now - timedelta(minutes=1))

    removed = await repo.delete_stale_markers(now - timedelta(minutes=5))

    assert removed == ["old"]
    assert await repo.get_marker("fresh") is not None


@pytest.mark.anyio
async def test_results_round_trip(session):
    repo = JobsRepo(session)
    await repo.save_result("p1", [{"id": "a"}])
    await repo.save_result("p1", [{"id": "b"}])

    result = await repo.get_result("p1")
    assert result.items_json == '[{"id":"b"}]'
    assert await repo.delete_result("p1") is True
    assert await repo.get_result("p1") is None


@pytest.mark.anyio
async def test_rate_limit_never_moves_earlier(session):
    repo = JobsRepo(session)
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    first = await repo.set_rate_limit(now + timedelta(hours=1), reason="429")
    second = await repo.set_rate_limit(now + timedelta(minutes=5))

    assert first == second == now + timedelta(hours=1)
    state = await repo.get_rate_limit()
    assert ensure_utc(state.resume_at) == now + timedelta(hours=1)

    assert await repo.delete_expired_rate_limits(now + timedelta(hours=2)) == 1
    assert await repo.get_rate_limit() is None


@pytest.mark.anyio
async def test_clear_all_data(session):
    await SourcesRepo(session).get_or_create_source("s1", "S1")
    await ProfilesRepo(session).create_profile("P")

    deleted = await clear_all_data(session)

    assert deleted["sources"] == 1
    assert deleted["profiles"] == 1
    assert await SourcesRepo(session).list_sources() == []
