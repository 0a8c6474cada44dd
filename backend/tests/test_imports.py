"""
Import Smoke Test

Verifies that every improvement-loop module and API route module imports
without errors, and that the application factory wires up health and
configuration checks.
"""

import importlib
import os

import pytest
from httpx import AsyncClient, ASGITransport

from backend.api.errors import ConfigurationError
from backend.core.config import Settings, validate_required_settings


def _get_python_modules(directory: str, package_prefix: str) -> list:
    """Get all Python module names in a directory."""
    modules = []
    if not os.path.isdir(directory):
        return modules
    for f in sorted(os.listdir(directory)):
        if f.endswith(".py") and f not in ("__init__.py",):
            modules.append(f"{package_prefix}.{f[:-3]}")
    return modules


_SERVICE_MODULES = _get_python_modules(
    os.path.join(os.path.dirname(__file__), "..", "services", "auto_improvement"),
    "backend.services.auto_improvement",
)
_ROUTE_MODULES = _get_python_modules(
    os.path.join(os.path.dirname(__file__), "..", "api", "routes"),
    "backend.api.routes",
)


@pytest.mark.parametrize("module_name", _SERVICE_MODULES)
def test_service_import(module_name: str):
    """Verify each improvement-loop module imports without error."""
    importlib.import_module(module_name)


@pytest.mark.parametrize("module_name", _ROUTE_MODULES)
def test_route_import(module_name: str):
    """Verify each API route module imports without error."""
    importlib.import_module(module_name)


def test_main_app_import():
    """Verify the FastAPI application can be imported and created."""
    from backend.api.main import app
    assert app is not None
    paths = {route.path for route in app.routes}
    assert "/health" in paths
    assert "/api/v1/auto-improvement" in paths


@pytest.mark.asyncio
async def test_health_check():
    from backend.api.main import create_app

    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestRequiredSettings:
    """Tests for validate_required_settings."""

    def test_configured(self):
        validate_required_settings(Settings(OPENAI_API_KEY="key", DATABASE_URL="sqlite:///x.db"))

    def test_reports_every_missing_setting(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_required_settings(Settings(OPENAI_API_KEY="", DATABASE_URL=""))

        error = exc_info.value
        assert error.status_code == 500
        assert [d.field for d in error.details] == ["OPENAI_API_KEY", "DATABASE_URL"]


class TestDatabase:
    """Tests for datastore configuration and startup checks."""

    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("postgres://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
        ("sqlite:///./tuner.db", "sqlite+aiosqlite:///./tuner.db"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ])
    def test_async_url(self, monkeypatch, url, expected):
        from backend.db import database

        monkeypatch.setattr(database, "get_settings", lambda: Settings(OPENAI_API_KEY="k", DATABASE_URL=url))

        assert database.DatabaseConfig().async_url == expected

    @pytest.mark.asyncio
    async def test_init_db_reports_missing_tables(self, monkeypatch):
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import StaticPool

        from backend.db import database

        engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
        monkeypatch.setattr(database, "async_engine", engine)

        with pytest.raises(ConfigurationError) as exc_info:
            await database.init_db()
        assert "ai_agents" in exc_info.value.message

        async with engine.begin() as conn:
            await conn.run_sync(database.Base.metadata.create_all)
        await database.init_db()

        await engine.dispose()
