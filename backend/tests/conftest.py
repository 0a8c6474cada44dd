"""
PromptTuner - Pytest Configuration
==================================

Shared fixtures and configuration for all tests.
"""

import os
from typing import AsyncGenerator

import pytest

# Set test environment BEFORE any imports
os.environ["ENVIRONMENT"] = "testing"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DATABASE_TYPE"] = "sqlite"

from httpx import AsyncClient, ASGITransport
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Import app components after setting env vars
from backend.api.deps import get_improvement_llm
from backend.api.errors import register_exception_handlers
from backend.api.routes import auto_improvement
from backend.db.database import get_async_session
from backend.db.models import Base
from backend.services.auto_improvement.policy import ImprovementPolicy
from backend.tests.helpers import FakeChatModel


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Fresh in-memory SQLite engine per test; components commit."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def policy() -> ImprovementPolicy:
    return ImprovementPolicy()


# =============================================================================
# FastAPI Test Client
# =============================================================================

@pytest.fixture
def fake_llm() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def test_app(session_factory, fake_llm) -> FastAPI:
    """Create a test FastAPI application with dependency overrides."""
    app = FastAPI(title="PromptTuner Test")

    app.include_router(
        auto_improvement.router,
        prefix="/api/v1/auto-improvement",
        tags=["Auto-Improvement"],
    )
    register_exception_handlers(app)

    async def override_get_async_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # Override the database session dependency to use test database
    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_improvement_llm] = lambda: fake_llm

    return app


@pytest.fixture
async def async_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=test_app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
