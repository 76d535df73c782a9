"""Pytest configuration and shared fixtures."""

import asyncio
import os
from typing import Sequence

# Set test environment variables before any imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_tastegraph.db"
os.environ["LLM_ENABLED"] = "true"
os.environ["LLM_PROVIDER"] = "openai"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["VISUAL_ANALYSIS_ENABLED"] = "false"

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tastegraph.core.contracts import PromptPart
from tastegraph.storage import Base

TEST_DB_PATH = "./test_tastegraph_unit.db"


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{TEST_DB_PATH}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()

    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


class FakeClient:
    """Scripted ``GenerationClient``.

    Each call consumes the next scripted response; the last one repeats.
    Exceptions in the script are raised instead of returned. When ``gate``
    is set, calls block until it is released.
    """

    def __init__(self, *responses, gate: asyncio.Event | None = None):
        self.responses = list(responses) or ["{}"]
        self.gate = gate
        self.calls: list[dict] = []

    async def generate(
        self,
        prompt_parts: Sequence[PromptPart | str],
        system_instruction: str,
        max_output_size: int,
    ) -> str:
        self.calls.append(
            {
                "prompt_parts": list(prompt_parts),
                "system_instruction": system_instruction,
                "max_output_size": max_output_size,
            }
        )
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_client():
    return FakeClient
