"""Generation job orchestrator.

Persisted state machine, one job per scope key (profile id or ``master``)::

    Idle -> Running -> Completed | Failed

The durable side-store holds an in-flight marker per scope, the completed
payload per scope and one rate-limit resume time. Any process can read them,
so a reader that outlives (or replaces) the process that started a job still
finds its result. Failure messages are only kept in memory for the process
that ran the job; other readers see the scope as idle.

On success the payload is committed before the marker is deleted, so a
reader never sees "no marker and no payload" for a job that succeeded.
"""

import asyncio
from datetime import datetime, timedelta
from functools import partial
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tastegraph.config import config
from tastegraph.core.clock import ensure_utc, utc_now
from tastegraph.core.contracts import (
    EmptyGraphError,
    GenerationClient,
    GenerationFilters,
    JobState,
    PollResult,
    RecommendationItem,
    StartOutcome,
    StartResult,
    scope_key_for,
)
from tastegraph.core.graph import TagGraph
from tastegraph.core.recommendations import generate_recommendations
from tastegraph.core.scopes import flatten_profile, rebuild_master
from tastegraph.llm.llm_adapter import GenerationTransportError
from tastegraph.llm.parser import ResponseParseError
from tastegraph.logging import get_logger
from tastegraph.storage.json_utils import safe_json_loads
from tastegraph.storage.repo_jobs import JobsRepo

logger = get_logger(__name__)


async def sweep_stale_state(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    stale_after: timedelta,
) -> dict[str, int]:
    """Delete abandoned Running markers and expired rate-limit records."""
    async with session_factory() as session:
        jobs = JobsRepo(session)
        stale = await jobs.delete_stale_markers(now - stale_after)
        expired = await jobs.delete_expired_rate_limits(now)

    for scope_key in stale:
        logger.warning("Cleared abandoned generation job", extra={"scope_key": scope_key})
    return {"stale_markers": len(stale), "expired_rate_limits": expired}


class GenerationOrchestrator:
    """Starts, tracks and reconciles recommendation generation jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: GenerationClient,
        clock: Callable[[], datetime] = utc_now,
        stale_after: timedelta | None = None,
        rate_limit_default: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._clock = clock
        self.stale_after = stale_after or timedelta(minutes=config.job_stale_minutes)
        self.rate_limit_default = rate_limit_default or timedelta(
            seconds=config.rate_limit_default_seconds
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._failures: dict[str, PollResult] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_generation(
        self,
        profile_id: str | None = None,
        filters: GenerationFilters | None = None,
        source_ids: list[str] | None = None,
    ) -> StartResult:
        """Start a generation job for a scope unless one is running.

        Args:
            profile_id: Profile to generate for; None for the master scope
            filters: Occasion/budget/recipient filters
            source_ids: Explicit source subset for the master scope

        Returns:
            ACCEPTED, ALREADY_RUNNING, or RATE_LIMITED with ``resume_at``

        Raises:
            ProfileNotFound: If ``profile_id`` does not exist
            EmptyGraphError: If the scope has no tags to generate from
        """
        scope_key = scope_key_for(profile_id)
        filters = filters or GenerationFilters()
        now = self._clock()

        async with self._session_factory() as session:
            jobs = JobsRepo(session)

            resume_at = await self._active_resume_at(jobs, now)
            if resume_at is not None:
                logger.info(
                    f"Generation refused until {resume_at.isoformat()}",
                    extra={"scope_key": scope_key},
                )
                return StartResult(StartOutcome.RATE_LIMITED, scope_key, resume_at)

            graph = await self._scope_graph(session, profile_id, source_ids)
            if graph.is_empty:
                raise EmptyGraphError("No taste data in scope; analyze a source first")

            await self._clear_if_stale(jobs, scope_key, now)
            created = await jobs.create_marker(
                scope_key,
                started_at=now,
                profile_id=profile_id,
                filters=filters.to_dict(),
                source_ids=source_ids,
            )
            if not created:
                logger.info("Generation already running", extra={"scope_key": scope_key})
                return StartResult(StartOutcome.ALREADY_RUNNING, scope_key)

            await jobs.delete_result(scope_key)

        self._failures.pop(scope_key, None)
        task = asyncio.create_task(self._run_job(scope_key, now, graph, filters, profile_id))
        self._tasks[scope_key] = task
        task.add_done_callback(partial(self._forget_task, scope_key))
        logger.info("Generation started", extra={"scope_key": scope_key})
        return StartResult(StartOutcome.ACCEPTED, scope_key)

    async def poll_generation(self, scope_key: str, consume: bool = False) -> PollResult:
        """Reader's view of a scope's job.

        Args:
            scope_key: Profile id or ``master``
            consume: Delete a completed payload once read

        Returns:
            RUNNING, COMPLETED with items, FAILED with message, or IDLE
        """
        now = self._clock()

        async with self._session_factory() as session:
            jobs = JobsRepo(session)

            marker = await jobs.get_marker(scope_key)
            if marker is not None and not await self._clear_if_stale(jobs, scope_key, now):
                return PollResult(
                    JobState.RUNNING,
                    scope_key,
                    started_at=ensure_utc(marker.started_at),
                )

            result = await jobs.get_result(scope_key)
            if result is not None:
                items = [
                    RecommendationItem.from_dict(entry)
                    for entry in safe_json_loads(result.items_json, default=[])
                    if isinstance(entry, dict)
                ]
                if consume:
                    await jobs.delete_result(scope_key)
                return PollResult(JobState.COMPLETED, scope_key, items=items)

        failure = self._failures.get(scope_key)
        if failure is not None:
            return failure
        return PollResult(JobState.IDLE, scope_key)

    async def wait(self, scope_key: str) -> PollResult:
        """Await this process's job for a scope, or poll if there is none."""
        task = self._tasks.get(scope_key)
        if task is not None:
            return await task
        return await self.poll_generation(scope_key)

    async def resume_at(self) -> datetime | None:
        """Absolute time before which new jobs are refused, if any."""
        async with self._session_factory() as session:
            return await self._active_resume_at(JobsRepo(session), self._clock())

    async def time_until_allowed(self) -> float:
        """Seconds until new jobs may start; 0.0 when allowed now."""
        resume_at = await self.resume_at()
        if resume_at is None:
            return 0.0
        return max(0.0, (resume_at - self._clock()).total_seconds())

    async def sweep(self) -> dict[str, int]:
        return await sweep_stale_state(self._session_factory, self._clock(), self.stale_after)

    def running_scopes(self) -> list[str]:
        """Scopes with a job task alive in this process."""
        return sorted(self._tasks)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _scope_graph(
        self,
        session: AsyncSession,
        profile_id: str | None,
        source_ids: list[str] | None,
    ) -> TagGraph:
        if profile_id:
            return await flatten_profile(session, profile_id)
        master = await rebuild_master(session, source_ids)
        return master.tag_graph

    async def _active_resume_at(self, jobs: JobsRepo, now: datetime) -> datetime | None:
        state = await jobs.get_rate_limit()
        if state is None:
            return None
        resume_at = ensure_utc(state.resume_at)
        if resume_at <= now:
            await jobs.delete_rate_limit()
            logger.info("Rate limit expired")
            return None
        return resume_at

    async def _clear_if_stale(self, jobs: JobsRepo, scope_key: str, now: datetime) -> bool:
        """Delete the scope's marker if it is older than ``stale_after``."""
        marker = await jobs.get_marker(scope_key)
        if marker is None:
            return False
        if now - ensure_utc(marker.started_at) <= self.stale_after:
            return False
        await jobs.delete_marker(scope_key, marker.started_at)
        logger.warning(
            f"Treating generation started at {marker.started_at} as abandoned",
            extra={"scope_key": scope_key},
        )
        return True

    def _forget_task(self, scope_key: str, task: asyncio.Task) -> None:
        if self._tasks.get(scope_key) is task:
            del self._tasks[scope_key]

    async def _run_job(
        self,
        scope_key: str,
        started_at: datetime,
        graph: TagGraph,
        filters: GenerationFilters,
        profile_id: str | None,
    ) -> PollResult:
        try:
            items = await generate_recommendations(
                self._client, graph, filters, profile_id=profile_id
            )
        except GenerationTransportError as e:
            if e.rate_limited:
                return await self._record_rate_limit(scope_key, started_at, e)
            return await self._fail(scope_key, started_at, f"Generation failed: {e}")
        except ResponseParseError as e:
            return await self._fail(scope_key, started_at, f"Could not parse recommendations: {e}")
        except Exception as e:
            logger.exception(f"Unexpected generation error: {e}", extra={"scope_key": scope_key})
            return await self._fail(scope_key, started_at, "Unexpected generation error")

        return await self._complete(scope_key, started_at, items)

    async def _complete(
        self,
        scope_key: str,
        started_at: datetime,
        items: list[RecommendationItem],
    ) -> PollResult:
        async with self._session_factory() as session:
            jobs = JobsRepo(session)

            marker = await jobs.get_marker(scope_key)
            if marker is not None and ensure_utc(marker.started_at) != started_at:
                logger.warning(
                    "Discarding result of a job superseded after going stale",
                    extra={"scope_key": scope_key},
                )
                return PollResult(JobState.COMPLETED, scope_key, items=items)

            await jobs.save_result(scope_key, [item.to_dict() for item in items])
            await jobs.delete_marker(scope_key, started_at)

        logger.info(f"Generation completed with {len(items)} items", extra={"scope_key": scope_key})
        return PollResult(JobState.COMPLETED, scope_key, items=items)

    async def _fail(self, scope_key: str, started_at: datetime, message: str) -> PollResult:
        async with self._session_factory() as session:
            await JobsRepo(session).delete_marker(scope_key, started_at)

        logger.error(message, extra={"scope_key": scope_key})
        failure = PollResult(JobState.FAILED, scope_key, message=message)
        self._failures[scope_key] = failure
        return failure

    async def _record_rate_limit(
        self,
        scope_key: str,
        started_at: datetime,
        error: GenerationTransportError,
    ) -> PollResult:
        if error.retry_after is not None:
            wait = timedelta(seconds=error.retry_after)
        else:
            wait = self.rate_limit_default
        requested = self._clock() + wait

        async with self._session_factory() as session:
            jobs = JobsRepo(session)
            resume_at = await jobs.set_rate_limit(requested, reason=str(error))
            await jobs.delete_marker(scope_key, started_at)

        message = f"Rate limited until {resume_at.isoformat()}"
        logger.warning(message, extra={"scope_key": scope_key})
        failure = PollResult(JobState.FAILED, scope_key, message=message, resume_at=resume_at)
        self._failures[scope_key] = failure
        return failure
