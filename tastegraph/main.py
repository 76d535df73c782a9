"""Application entrypoint for the FastAPI service."""

import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncGenerator

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tastegraph.config import config
from tastegraph.core import analysis, scopes
from tastegraph.core.clock import ensure_utc, utc_now
from tastegraph.core.contracts import (
    CHANNELS,
    Channel,
    Descriptor,
    EmptyGraphError,
    GenerationFilters,
    JobAlreadyRunning,
    NoItemsToAnalyze,
    NoSuchSource,
    PollResult,
    ProfileNotFound,
    SourceMeta,
    StartOutcome,
)
from tastegraph.core.explorer import combine_tags
from tastegraph.core.graph import TagGraph
from tastegraph.core.orchestrator import GenerationOrchestrator
from tastegraph.jobs import setup_all_jobs, shutdown_scheduler, start_scheduler
from tastegraph.llm import GenerationTransportError, LLMGenerationClient, ResponseParseError
from tastegraph.logging import get_logger, setup_logging
from tastegraph.storage import (
    GraphRepo,
    JobsRepo,
    ProfilesRepo,
    SavedRepo,
    SourcesRepo,
    clear_all_data,
    close_engine,
    create_all,
    get_session_factory,
)
from tastegraph.storage.models import Profile, Source

setup_logging(config.log_level)
logger = get_logger(__name__)


async def verify_admin_token(
    authorization: str | None = Header(None, alias="Authorization"),
) -> None:
    """Verify admin token for protected endpoints.

    Args:
        authorization: Authorization header value

    Raises:
        HTTPException: If token is invalid or missing
    """
    if not config.admin_token:
        raise HTTPException(
            status_code=503,
            detail="Admin endpoints not configured (ADMIN_TOKEN not set)",
        )

    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    # Support "Bearer <token>" or just "<token>"
    token = authorization
    if authorization.startswith("Bearer "):
        token = authorization[7:]

    if token != config.admin_token:
        raise HTTPException(status_code=403, detail="Invalid admin token")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    session_factory = get_session_factory()
    async with session_factory() as session:
        yield session


def get_client(request: Request) -> LLMGenerationClient:
    client = getattr(request.app.state, "client", None)
    if client is None:
        client = request.app.state.client = LLMGenerationClient()
    return client


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = GenerationOrchestrator(get_session_factory(), get_client(request))
        request.app.state.orchestrator = orchestrator
    return orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting application")

    # Ensure all tables exist (dev convenience, idempotent)
    await create_all()
    logger.info("Database tables ensured")

    app.state.client = LLMGenerationClient()
    app.state.orchestrator = GenerationOrchestrator(get_session_factory(), app.state.client)

    start_scheduler()
    setup_all_jobs()

    yield

    logger.info("Shutting down application")
    shutdown_scheduler()
    await close_engine()


app = FastAPI(
    title="TasteGraph",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, **extra})


@app.exception_handler(NoSuchSource)
@app.exception_handler(ProfileNotFound)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(404, str(exc))


@app.exception_handler(NoItemsToAnalyze)
@app.exception_handler(EmptyGraphError)
async def bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(400, str(exc))


@app.exception_handler(JobAlreadyRunning)
async def conflict_handler(request: Request, exc: JobAlreadyRunning) -> JSONResponse:
    return _error(409, str(exc), scope_key=exc.scope_key)


@app.exception_handler(GenerationTransportError)
async def transport_error_handler(request: Request, exc: GenerationTransportError) -> JSONResponse:
    if not exc.rate_limited:
        return _error(502, str(exc))

    # Block new generation jobs too, whichever operation hit the limit
    wait = exc.retry_after if exc.retry_after is not None else config.rate_limit_default_seconds
    session_factory = get_session_factory()
    async with session_factory() as session:
        resume_at = await JobsRepo(session).set_rate_limit(
            utc_now() + timedelta(seconds=wait), reason=str(exc)
        )
    return _error(429, "Rate limit exceeded", resume_at=resume_at.isoformat())


@app.exception_handler(ResponseParseError)
async def parse_error_handler(request: Request, exc: ResponseParseError) -> JSONResponse:
    logger.warning(f"Unparseable generator output: {exc.raw_text[:200]!r}")
    return _error(502, str(exc))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _graph_dict(graph: TagGraph, top_k: int | None = None) -> dict[str, Any]:
    if top_k is None:
        return graph.to_dict()
    return {channel: dict(graph.top_k(channel, top_k)) for channel in CHANNELS}


def _source_dict(source: Source, with_graph: bool = False) -> dict[str, Any]:
    data = {
        "id": source.source_id,
        "name": source.name,
        "label": source.label,
        "url": source.url,
        "item_count": source.item_count,
        "enabled": source.enabled,
        "updated_at": _iso(source.updated_at),
        "analyzed_at": _iso(source.analyzed_at),
        "error": (
            {"message": source.last_error, "at": _iso(source.last_error_at)}
            if source.last_error
            else None
        ),
    }
    if with_graph:
        data["graph"] = source.tag_graph.to_dict()
        data["visual_ideas"] = source.visual_ideas
    return data


def _profile_dict(profile: Profile) -> dict[str, Any]:
    return {
        "id": profile.profile_id,
        "name": profile.name,
        "source_ids": profile.source_ids,
        "manual_tags": profile.manual_tags,
        "excluded_tags": profile.excluded_tags,
        "created_at": _iso(profile.created_at),
        "updated_at": _iso(profile.updated_at),
    }


def _poll_dict(result: PollResult) -> dict[str, Any]:
    return {
        "state": result.state.value,
        "scope_key": result.scope_key,
        "items": [item.to_dict() for item in result.items],
        "message": result.message,
        "started_at": _iso(result.started_at),
        "resume_at": _iso(result.resume_at),
    }


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"ok": True}


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class DescriptorPayload(BaseModel):
    id: str
    title: str = ""
    alt_text: str = ""
    url: str = ""
    image_url: str | None = None


class SubmitDescriptorsPayload(BaseModel):
    """Raw descriptors collected from one origin."""

    source_id: str | None = None
    name: str
    url: str = ""
    items: list[DescriptorPayload] = Field(default_factory=list)


class SourceUpdatePayload(BaseModel):
    label: str | None = None
    enabled: bool | None = None


@app.post("/sources/descriptors")
async def submit_descriptors(
    payload: SubmitDescriptorsPayload,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Store descriptors for a source; analysis is requested separately."""
    descriptors = [Descriptor.from_dict(item.model_dump()) for item in payload.items]
    source, added = await scopes.submit_descriptors(
        session,
        payload.source_id,
        SourceMeta(name=payload.name, url=payload.url),
        descriptors,
    )
    return {"ok": True, "source_id": source.source_id, "added": added, "item_count": source.item_count}


@app.get("/sources")
async def list_sources(session: AsyncSession = Depends(get_session)) -> dict:
    sources = await SourcesRepo(session).list_sources()
    return {"ok": True, "sources": [_source_dict(s) for s in sources]}


@app.get("/sources/{source_id}")
async def get_source(source_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    source = await scopes.require_source(session, source_id)
    return {"ok": True, "source": _source_dict(source, with_graph=True)}


@app.patch("/sources/{source_id}")
async def update_source(
    source_id: str,
    payload: SourceUpdatePayload,
    session: AsyncSession = Depends(get_session),
) -> dict:
    source = await scopes.require_source(session, source_id)
    if payload.label is not None:
        source = await scopes.rename_source(session, source_id, payload.label)
    if payload.enabled is not None:
        source = await scopes.set_source_enabled(session, source_id, payload.enabled)
    return {"ok": True, "source": _source_dict(source)}


@app.delete("/sources/{source_id}")
async def delete_source(source_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    await scopes.delete_source(session, source_id)
    return {"ok": True}


@app.post("/sources/analyze-all")
async def analyze_all_sources(
    session: AsyncSession = Depends(get_session),
    client: LLMGenerationClient = Depends(get_client),
) -> dict:
    results = await analysis.analyze_all(session, client)
    return {"ok": True, "results": [vars(r) for r in results]}


@app.post("/sources/reanalyze")
async def reanalyze_all_sources(
    session: AsyncSession = Depends(get_session),
    client: LLMGenerationClient = Depends(get_client),
) -> dict:
    """Reset every source graph and rebuild it from all stored items."""
    results = await analysis.reanalyze_all(session, client)
    return {"ok": True, "results": [vars(r) for r in results]}


@app.post("/sources/{source_id}/analyze")
async def analyze_source(
    source_id: str,
    session: AsyncSession = Depends(get_session),
    client: LLMGenerationClient = Depends(get_client),
) -> dict:
    graph = await analysis.analyze_source(session, source_id, client)
    return {"ok": True, "source_id": source_id, "graph": graph.to_dict()}


# ---------------------------------------------------------------------------
# Master graph
# ---------------------------------------------------------------------------


class RebuildPayload(BaseModel):
    source_ids: list[str] | None = None


class GraphTagPayload(BaseModel):
    tag: str
    channel: str = Channel.KEYWORDS.value
    weight: int = Field(default=1, ge=0)


class CombinePayload(BaseModel):
    tags: list[str]
    profile_id: str | None = None
    source_ids: list[str] | None = None


@app.get("/graph")
async def get_graph(top_k: int | None = None, session: AsyncSession = Depends(get_session)) -> dict:
    master = await GraphRepo(session).get_master()
    if master is None:
        master = await scopes.rebuild_master(session)
    return {
        "ok": True,
        "graph": _graph_dict(master.tag_graph, top_k),
        "source_ids": master.source_ids,
        "updated_at": _iso(master.updated_at),
    }


@app.post("/graph/rebuild")
async def rebuild_graph(
    payload: RebuildPayload | None = None,
    session: AsyncSession = Depends(get_session),
) -> dict:
    master = await scopes.rebuild_master(session, payload.source_ids if payload else None)
    return {"ok": True, "graph": master.tag_graph.to_dict(), "updated_at": _iso(master.updated_at)}


@app.post("/graph/tags")
async def add_graph_tag(payload: GraphTagPayload, session: AsyncSession = Depends(get_session)) -> dict:
    try:
        master = await scopes.add_master_tag(session, payload.tag, payload.channel, payload.weight)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "graph": master.tag_graph.to_dict()}


@app.delete("/graph/tags/{tag}")
async def remove_graph_tag(tag: str, session: AsyncSession = Depends(get_session)) -> dict:
    master = await scopes.remove_master_tag(session, tag)
    return {"ok": True, "graph": master.tag_graph.to_dict()}


@app.post("/graph/combine")
async def combine_graph_tags(
    payload: CombinePayload,
    session: AsyncSession = Depends(get_session),
    client: LLMGenerationClient = Depends(get_client),
) -> dict:
    if payload.profile_id:
        graph = await scopes.flatten_profile(session, payload.profile_id)
    elif payload.source_ids:
        graph = await scopes.flatten_sources(session, payload.source_ids)
    else:
        graph = await scopes.get_master_graph(session)
    concept = await combine_tags(payload.tags, graph, client)
    return {"ok": True, "result": vars(concept)}


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class ProfileCreatePayload(BaseModel):
    name: str
    source_ids: list[str] = Field(default_factory=list)
    manual_tags: list[str] = Field(default_factory=list)


class ProfileUpdatePayload(BaseModel):
    name: str | None = None
    source_ids: list[str] | None = None
    manual_tags: list[str] | None = None


class ProfileTagPayload(BaseModel):
    tag: str


@app.get("/profiles")
async def list_profiles(session: AsyncSession = Depends(get_session)) -> dict:
    profiles = await ProfilesRepo(session).list_profiles()
    return {"ok": True, "profiles": [_profile_dict(p) for p in profiles]}


@app.post("/profiles")
async def create_profile(payload: ProfileCreatePayload, session: AsyncSession = Depends(get_session)) -> dict:
    profile = await ProfilesRepo(session).create_profile(
        payload.name, payload.source_ids, payload.manual_tags
    )
    logger.info(f"Created profile {payload.name!r}", extra={"profile_id": profile.profile_id})
    return {"ok": True, "profile": _profile_dict(profile)}


@app.get("/profiles/{profile_id}")
async def get_profile(profile_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    profile = await scopes.require_profile(session, profile_id)
    return {"ok": True, "profile": _profile_dict(profile)}


@app.patch("/profiles/{profile_id}")
async def update_profile(
    profile_id: str,
    payload: ProfileUpdatePayload,
    session: AsyncSession = Depends(get_session),
) -> dict:
    profile = await ProfilesRepo(session).update_profile(
        profile_id, payload.name, payload.source_ids, payload.manual_tags
    )
    if profile is None:
        raise ProfileNotFound(profile_id)
    return {"ok": True, "profile": _profile_dict(profile)}


@app.delete("/profiles/{profile_id}")
async def delete_profile(profile_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    if not await ProfilesRepo(session).delete_profile(profile_id):
        raise ProfileNotFound(profile_id)
    return {"ok": True}


@app.post("/profiles/{profile_id}/tags")
async def add_profile_tag(
    profile_id: str,
    payload: ProfileTagPayload,
    session: AsyncSession = Depends(get_session),
) -> dict:
    profile = await ProfilesRepo(session).add_manual_tag(profile_id, payload.tag)
    if profile is None:
        raise ProfileNotFound(profile_id)
    return {"ok": True, "profile": _profile_dict(profile)}


@app.delete("/profiles/{profile_id}/tags/{tag}")
async def remove_profile_tag(profile_id: str, tag: str, session: AsyncSession = Depends(get_session)) -> dict:
    profile = await ProfilesRepo(session).remove_manual_tag(profile_id, tag)
    if profile is None:
        raise ProfileNotFound(profile_id)
    return {"ok": True, "profile": _profile_dict(profile)}


@app.get("/profiles/{profile_id}/graph")
async def get_profile_graph(
    profile_id: str,
    top_k: int | None = None,
    session: AsyncSession = Depends(get_session),
) -> dict:
    graph = await scopes.flatten_profile(session, profile_id)
    return {"ok": True, "graph": _graph_dict(graph, top_k)}


@app.get("/profiles/{profile_id}/similarity")
async def get_profile_similarity(profile_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    pairs = await scopes.profile_similarities(session, profile_id)
    return {"ok": True, "pairs": [vars(pair) for pair in pairs]}


# ---------------------------------------------------------------------------
# Generation jobs
# ---------------------------------------------------------------------------


class GenerationPayload(BaseModel):
    profile_id: str | None = None
    source_ids: list[str] | None = None
    occasion: str | None = None
    budget: str | None = None
    recipient_age: str | None = None


@app.post("/generations", status_code=202)
async def start_generation(
    payload: GenerationPayload,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Start a recommendation job; poll ``/generations/{scope_key}`` for it."""
    filters = GenerationFilters(
        occasion=payload.occasion,
        budget=payload.budget,
        recipient_age=payload.recipient_age,
    )
    result = await orchestrator.start_generation(payload.profile_id, filters, payload.source_ids)

    if result.outcome == StartOutcome.ALREADY_RUNNING:
        raise JobAlreadyRunning(result.scope_key)
    if result.outcome == StartOutcome.RATE_LIMITED:
        return _error(
            429,
            "Rate limit exceeded",
            scope_key=result.scope_key,
            resume_at=_iso(result.resume_at),
        )
    return {"ok": True, "outcome": result.outcome.value, "scope_key": result.scope_key}


@app.get("/generations/rate-limit")
async def get_rate_limit(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)) -> dict:
    resume_at = await orchestrator.resume_at()
    remaining = (resume_at - utc_now()).total_seconds() if resume_at else 0.0
    return {"ok": True, "seconds_remaining": max(0.0, remaining), "resume_at": _iso(resume_at)}


@app.get("/generations/{scope_key}")
async def poll_generation(
    scope_key: str,
    consume: bool = False,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    result = await orchestrator.poll_generation(scope_key, consume=consume)
    return {"ok": True, **_poll_dict(result)}


# ---------------------------------------------------------------------------
# Saved recommendations
# ---------------------------------------------------------------------------


class SavePayload(BaseModel):
    item: dict[str, Any]
    profile_id: str | None = None


@app.get("/saved")
async def list_saved(profile_id: str | None = None, session: AsyncSession = Depends(get_session)) -> dict:
    items = await SavedRepo(session).list_saved(profile_id)
    return {"ok": True, "items": items}


@app.post("/saved")
async def save_recommendation(payload: SavePayload, session: AsyncSession = Depends(get_session)) -> dict:
    item = dict(payload.item)
    rec_id = str(item.get("id") or uuid.uuid4().hex)
    item["id"] = rec_id
    profile_id = payload.profile_id or item.get("profile_id")
    saved = await SavedRepo(session).save(rec_id, item, profile_id)
    return {"ok": True, "id": saved.rec_id, "saved_at": _iso(saved.saved_at)}


@app.delete("/saved/{rec_id}")
async def delete_saved(rec_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    if not await SavedRepo(session).delete(rec_id):
        raise HTTPException(status_code=404, detail=f"Saved recommendation not found: {rec_id}")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Stats and admin
# ---------------------------------------------------------------------------


@app.get("/stats")
async def get_stats(session: AsyncSession = Depends(get_session)) -> dict:
    """Collection counts and freshness."""
    sources_repo = SourcesRepo(session)
    sources = await sources_repo.list_sources()
    master = await GraphRepo(session).get_master()
    return {
        "ok": True,
        "sources": len(sources),
        "enabled_sources": sum(1 for s in sources if s.enabled),
        "items": await sources_repo.count_items(),
        "analyzed": any(s.analyzed_at is not None for s in sources),
        "profiles": len(await ProfilesRepo(session).list_profiles()),
        "saved": len(await SavedRepo(session).list_saved()),
        "master_updated_at": _iso(master.updated_at) if master else None,
    }


@app.post("/admin/clear")
async def clear_data(
    _: None = Depends(verify_admin_token),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Delete all stored data.

    Requires admin token in Authorization header.
    """
    deleted = await clear_all_data(session)
    return {"ok": True, "deleted": deleted}


@app.post("/admin/sweep")
async def trigger_sweep(
    _: None = Depends(verify_admin_token),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Run the stale-state sweep now."""
    logger.info("Admin triggered generation sweep")
    return {"ok": True, **(await orchestrator.sweep())}


def main() -> None:
    """Run the API server."""
    logger.info(f"Starting FastAPI server on {config.host}:{config.port}")
    uvicorn.run(
        "tastegraph.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
