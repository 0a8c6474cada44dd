"""
PromptTuner - Database Connection & Session Management
======================================================

Supports two database backends:
- PostgreSQL (production, the hosted datastore reached with a service-role URL)
- SQLite (for development/testing)
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

# Load environment variables before anything else
from dotenv import load_dotenv

# Try to load from project root .env file
_env_file = Path(__file__).parent.parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    load_dotenv()

import structlog
from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.core.config import get_settings
from backend.db.models import Base

logger = structlog.get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class DatabaseConfig:
    """Database configuration from settings."""

    def __init__(self):
        settings = get_settings()
        self.database_type = settings.DATABASE_TYPE
        self.database_url = settings.DATABASE_URL
        self.pool_size = settings.DB_POOL_SIZE
        self.max_overflow = settings.DB_MAX_OVERFLOW
        self.echo = settings.DEBUG

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return "sqlite" in self.database_url.lower() or self.database_type == "sqlite"

    @property
    def is_memory(self) -> bool:
        """In-memory SQLite lives only as long as its single connection."""
        return self.is_sqlite and ":memory:" in self.database_url

    @property
    def async_url(self) -> str:
        """Convert sync URL to async URL."""
        url = self.database_url

        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        elif url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://")
        elif url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://")

        return url


# =============================================================================
# Engine & Session Factory
# =============================================================================

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def get_async_engine() -> AsyncEngine:
    """Get or create async database engine."""
    global async_engine

    if async_engine is None:
        db_config = DatabaseConfig()
        engine_kwargs = {
            "echo": db_config.echo,
        }

        # SQLite doesn't support pool_size/max_overflow
        if db_config.is_memory:
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        elif not db_config.is_sqlite:
            engine_kwargs["pool_size"] = db_config.pool_size
            engine_kwargs["max_overflow"] = db_config.max_overflow
            engine_kwargs["pool_pre_ping"] = True  # Check connection health

        async_engine = create_async_engine(
            db_config.async_url,
            **engine_kwargs,
        )
        logger.info(
            "Async database engine created",
            database_type=db_config.database_type,
            url_type="sqlite" if db_config.is_sqlite else "other",
        )

    return async_engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get async session factory."""
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    return AsyncSessionLocal


# =============================================================================
# Session Dependencies
# =============================================================================

async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for async database session.

    Usage:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_async_session)):
            ...
    """
    session_factory = get_async_session_factory()

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def async_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database session.

    Usage:
        async with async_session_context() as session:
            ...
    """
    session_factory = get_async_session_factory()

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# =============================================================================
# Database Initialization
# =============================================================================

LOOP_TABLES = tuple(Base.metadata.tables)


async def init_db() -> None:
    """
    Verify the datastore holds every table the improvement loop uses.

    Tables are created in development only; elsewhere they come from the
    migrations and a missing one is a configuration error.

    Raises:
        ConfigurationError: Tables are missing outside development
    """
    engine = get_async_engine()

    if get_settings().ENVIRONMENT == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))

    missing = [name for name in LOOP_TABLES if name not in existing]
    if missing:
        from backend.api.errors import ConfigurationError

        logger.error("Datastore is missing tables", missing=missing)
        raise ConfigurationError(
            f"Datastore is missing tables: {', '.join(missing)}. Run the migrations first."
        )

    logger.info("Database connection verified", tables=len(LOOP_TABLES))


async def close_db() -> None:
    """
    Close database connections.

    Called during application shutdown.
    """
    global async_engine, AsyncSessionLocal

    if async_engine is not None:
        await async_engine.dispose()
        async_engine = None
        AsyncSessionLocal = None
        logger.info("Async database engine disposed")
