"""Tests for the generation job orchestrator."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from tastegraph.core.contracts import (
    EmptyGraphError,
    GenerationFilters,
    JobState,
    ProfileNotFound,
    StartOutcome,
)
from tastegraph.core.graph import TagGraph
from tastegraph.core.orchestrator import GenerationOrchestrator
from tastegraph.llm.llm_adapter import GenerationTransportError
from tastegraph.storage import JobsRepo, ProfilesRepo, SourcesRepo

RECS = json.dumps([{"name": "Linen Throw", "search_query": "linen throw"}, {"name": "Candle"}])
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


async def _seed_source(session, source_id="s1", signals=None):
    repo = SourcesRepo(session)
    await repo.get_or_create_source(source_id, source_id)
    await repo.save_analysis(
        source_id, TagGraph.from_signals(signals or {"themes": ["cozy"], "colors": ["sage"]}), []
    )


@pytest.mark.anyio
async def test_duplicate_start_is_rejected_while_running(session, session_factory, fake_client, clock):
    await _seed_source(session)
    gate = asyncio.Event()
    client = fake_client(RECS, gate=gate)
    orchestrator = GenerationOrchestrator(session_factory, client, clock=clock)

    first = await orchestrator.start_generation(filters=GenerationFilters(occasion="birthday"))
    assert first.outcome == StartOutcome.ACCEPTED
    assert first.scope_key == "master"

    second = await orchestrator.start_generation()
    assert second.outcome == StartOutcome.ALREADY_RUNNING

    running = await orchestrator.poll_generation("master")
    assert running.state == JobState.RUNNING
    assert running.started_at == T0
    assert orchestrator.running_scopes() == ["master"]

    gate.set()
    done = await orchestrator.wait("master")
    assert done.state == JobState.COMPLETED
    assert [item.name for item in done.items] == ["Linen Throw", "Candle"]
    assert len(client.calls) == 1
    assert "for birthday" in client.calls[0]["prompt_parts"][0]


@pytest.mark.anyio
async def test_result_is_visible_to_another_process(session, session_factory, fake_client, clock):
    await _seed_source(session)
    writer = GenerationOrchestrator(session_factory, fake_client(RECS), clock=clock)
    await writer.start_generation()
    await writer.wait("master")

    reader = GenerationOrchestrator(session_factory, fake_client(), clock=clock)
    result = await reader.poll_generation("master")
    assert result.state == JobState.COMPLETED
    assert result.items[0].links["amazon"] == "https://www.amazon.com/s?k=linen+throw"

    consumed = await reader.poll_generation("master", consume=True)
    assert consumed.state == JobState.COMPLETED
    assert (await reader.poll_generation("master")).state == JobState.IDLE


@pytest.mark.anyio
async def test_failure_is_kept_in_memory_only(session, session_factory, fake_client, clock):
    await _seed_source(session)
    client = fake_client(GenerationTransportError("OpenAI server error: 500", status_code=500))
    orchestrator = GenerationOrchestrator(session_factory, client, clock=clock)

    await orchestrator.start_generation()
    failed = await orchestrator.wait("master")
    assert failed.state == JobState.FAILED
    assert "OpenAI server error" in failed.message

    assert (await orchestrator.poll_generation("master")).state == JobState.FAILED
    other = GenerationOrchestrator(session_factory, fake_client(), clock=clock)
    assert (await other.poll_generation("master")).state == JobState.IDLE

    async with session_factory() as s:
        assert await JobsRepo(s).get_marker("master") is None


@pytest.mark.anyio
async def test_unparseable_response_fails_the_job(session, session_factory, fake_client, clock):
    await _seed_source(session)
    orchestrator = GenerationOrchestrator(session_factory, fake_client("sorry, no ideas"), clock=clock)

    await orchestrator.start_generation()
    failed = await orchestrator.wait("master")

    assert failed.state == JobState.FAILED
    assert failed.message.startswith("Could not parse recommendations")


@pytest.mark.anyio
async def test_new_start_clears_previous_failure(session, session_factory, fake_client, clock):
    await _seed_source(session)
    client = fake_client(GenerationTransportError("boom", status_code=500), RECS)
    orchestrator = GenerationOrchestrator(session_factory, client, clock=clock)

    await orchestrator.start_generation()
    await orchestrator.wait("master")
    await orchestrator.start_generation()
    done = await orchestrator.wait("master")

    assert done.state == JobState.COMPLETED
    assert (await orchestrator.poll_generation("master")).state == JobState.COMPLETED


@pytest.mark.anyio
async def test_stale_marker_is_treated_as_abandoned(session, session_factory, fake_client, clock):
    await _seed_source(session)
    jobs = JobsRepo(session)
    await jobs.create_marker("master", started_at=T0 - timedelta(minutes=30))
    orchestrator = GenerationOrchestrator(session_factory, fake_client(RECS), clock=clock)

    assert (await orchestrator.poll_generation("master")).state == JobState.IDLE

    await jobs.create_marker("master", started_at=T0 - timedelta(minutes=30))
    started = await orchestrator.start_generation()
    assert started.outcome == StartOutcome.ACCEPTED
    assert (await orchestrator.wait("master")).state == JobState.COMPLETED


@pytest.mark.anyio
async def test_superseded_job_discards_its_result(session, session_factory, fake_client, clock):
    await _seed_source(session)
    first_gate, second_gate = asyncio.Event(), asyncio.Event()
    first = GenerationOrchestrator(session_factory, fake_client(RECS, gate=first_gate), clock=clock)
    second = GenerationOrchestrator(session_factory, fake_client(RECS, gate=second_gate), clock=clock)

    await first.start_generation()
    clock.advance(minutes=10)
    assert (await second.start_generation()).outcome == StartOutcome.ACCEPTED

    first_gate.set()
    await first.wait("master")
    assert (await second.poll_generation("master")).state == JobState.RUNNING

    second_gate.set()
    assert (await second.wait("master")).state == JobState.COMPLETED


@pytest.mark.anyio
async def test_rate_limit_blocks_new_jobs(session, session_factory, fake_client, clock):
    await _seed_source(session)
    limited = GenerationTransportError("OpenAI rate limit", status_code=429)
    orchestrator = GenerationOrchestrator(session_factory, fake_client(limited, RECS), clock=clock)

    await orchestrator.start_generation()
    failed = await orchestrator.wait("master")
    assert failed.state == JobState.FAILED
    assert failed.resume_at == T0 + timedelta(seconds=3600)

    refused = await orchestrator.start_generation(profile_id=None)
    assert refused.outcome == StartOutcome.RATE_LIMITED
    assert refused.resume_at == T0 + timedelta(seconds=3600)
    assert await orchestrator.time_until_allowed() == 3600.0

    clock.advance(seconds=3601)
    assert await orchestrator.time_until_allowed() == 0.0
    assert (await orchestrator.start_generation()).outcome == StartOutcome.ACCEPTED
    assert (await orchestrator.wait("master")).state == JobState.COMPLETED


@pytest.mark.anyio
async def test_rate_limit_honours_retry_after(session, session_factory, fake_client, clock):
    await _seed_source(session)
    limited = GenerationTransportError("limited", status_code=429, retry_after=30)
    orchestrator = GenerationOrchestrator(session_factory, fake_client(limited), clock=clock)

    await orchestrator.start_generation()
    await orchestrator.wait("master")

    assert await orchestrator.resume_at() == T0 + timedelta(seconds=30)


@pytest.mark.anyio
async def test_profile_scope(session, session_factory, fake_client, clock):
    await _seed_source(session, "s1", {"themes": ["cozy"]})
    profile = await ProfilesRepo(session).create_profile("Mom", ["s1"], manual_tags=["tea"])
    client = fake_client(RECS)
    orchestrator = GenerationOrchestrator(session_factory, client, clock=clock)

    started = await orchestrator.start_generation(profile_id=profile.profile_id)
    assert started.scope_key == profile.profile_id

    done = await orchestrator.wait(profile.profile_id)
    assert all(item.profile_id == profile.profile_id for item in done.items)
    assert "cozy" in client.calls[0]["prompt_parts"][0]


@pytest.mark.anyio
async def test_profile_manual_tags_reach_the_prompt(session, session_factory, fake_client, clock):
    await _seed_source(session, "s1", {"themes": ["cozy"]})
    profile = await ProfilesRepo(session).create_profile("Dad", ["s1"], manual_tags=["Woodworking"])
    client = fake_client(RECS)
    orchestrator = GenerationOrchestrator(session_factory, client, clock=clock)

    await orchestrator.start_generation(profile_id=profile.profile_id)
    await orchestrator.wait(profile.profile_id)

    prompt = client.calls[0]["prompt_parts"][0]
    assert "Keywords: woodworking" in prompt
    assert "Themes: cozy" in prompt


@pytest.mark.anyio
async def test_start_requires_existing_non_empty_scope(session, session_factory, fake_client, clock):
    orchestrator = GenerationOrchestrator(session_factory, fake_client(RECS), clock=clock)

    with pytest.raises(ProfileNotFound):
        await orchestrator.start_generation(profile_id="missing")
    with pytest.raises(EmptyGraphError):
        await orchestrator.start_generation()

    assert (await orchestrator.poll_generation("master")).state == JobState.IDLE


@pytest.mark.anyio
async def test_sweep(session, session_factory, fake_client, clock):
    jobs = JobsRepo(session)
    await jobs.create_marker("old", started_at=T0 - timedelta(hours=1))
    await jobs.create_marker("fresh", started_at=T0)
    await jobs.set_rate_limit(T0 - timedelta(seconds=1))
    orchestrator = GenerationOrchestrator(session_factory, fake_client(), clock=clock)

    assert await orchestrator.sweep() == {"stale_markers": 1, "expired_rate_limits": 1}
    assert await jobs.get_marker("old") is None
    assert await jobs.get_marker("fresh") is not None
