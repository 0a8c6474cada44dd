"""
PromptTuner - FastAPI Application Entry Point
=============================================

This is the main entry point for the PromptTuner backend API.
It initializes the FastAPI application with all routes, middleware,
and lifecycle events.
"""

import os
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv

# Try to load from project root .env file
env_file = Path(__file__).parent.parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)
else:
    # Fallback to current directory
    load_dotenv()

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.api.errors import register_exception_handlers
from backend.core.config import get_settings, validate_required_settings

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if get_settings().LOG_FORMAT == "json"
        else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Startup fails when the LLM key or datastore URL is missing, or when the
    database cannot be reached.
    """
    logger.info("Starting PromptTuner API...")

    try:
        validate_required_settings()

        from backend.db.database import init_db
        await init_db()
        logger.info("Database initialized")

        logger.info("PromptTuner API started successfully")

    except Exception as e:
        logger.error("Failed to start API", error=str(e))
        raise

    yield

    logger.info("Shutting down PromptTuner API...")

    try:
        from backend.db.database import close_db
        await close_db()

        logger.info("PromptTuner API shutdown complete")

    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Autonomous prompt improvement for LLM-backed agents",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    register_exception_handlers(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    # Health check (no configuration required)
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Check if the API is running and healthy."""
        return {
            "status": "healthy",
            "service": get_settings().APP_NAME,
            "version": API_VERSION,
        }

    from backend.api.routes.auto_improvement import router as auto_improvement_router

    app.include_router(
        auto_improvement_router,
        prefix="/api/v1/auto-improvement",
        tags=["Auto-Improvement"],
    )

    logger.info("Routes registered")


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()


# =============================================================================
# Development Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.api.main:app",
        host="0.0.0.0",
        port=int(os.getenv("BACKEND_PORT", "8000")),
        reload=get_settings().ENVIRONMENT == "development",
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
