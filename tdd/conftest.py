"""
Root conftest.py - Shared fixtures for all test types.

This file is automatically loaded by pytest and provides:
- Database engine/session fixtures over a throwaway SQLite file
- A FleetContext wired to fake substrates and a fake GitHub
- FastAPI test client
"""
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add backend, cli and tdd to path for imports
root = Path(__file__).parent.parent
sys.path.insert(0, str(root / "backend"))
sys.path.insert(0, str(root / "cli"))
sys.path.insert(0, str(root / "tdd"))

from autoscaler.config import ConfigProvider, Settings
from autoscaler.database import Base, get_db
from autoscaler.main import app
from autoscaler.routers.deps import get_context, get_manager
from autoscaler.services.cloud.registry import CloudRegistry
from autoscaler.services.context import FleetContext
from autoscaler.services.error_reporting import ErrorReporter
from autoscaler.services.pool_manager import PoolManager

from shared.fleet import make_config
from shared.mocks import FakeCloudController, FakeGitHubClient


# -----------------------------------------------------------------------------
# Database Fixtures
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create a test database engine.

    A file database rather than :memory: so that the independent sessions
    the queues open all see the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'autoscaler-test.db'}",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# -----------------------------------------------------------------------------
# Fleet Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def fleet_config():
    return make_config()


@pytest.fixture
def config_provider(fleet_config):
    return ConfigProvider(initial=fleet_config)


@pytest.fixture
def cloud_a():
    return FakeCloudController("cloud-a")


@pytest.fixture
def cloud_b():
    return FakeCloudController("cloud-b")


@pytest.fixture
def github():
    return FakeGitHubClient()


@pytest.fixture
def ctx(session_factory, config_provider, github, cloud_a, cloud_b) -> FleetContext:
    return FleetContext(
        session_factory=session_factory,
        config=config_provider,
        github=github,
        clouds=CloudRegistry([cloud_a, cloud_b]),
        reporter=ErrorReporter(),
    )


@pytest.fixture
def fast_settings():
    """Settings with no inter-task delays."""
    return Settings(
        tick_interval=0.01,
        refresh_interval=0.05,
        cull_interval=3600,
        create_spacing=0,
        delete_spacing=0,
    )


@pytest.fixture
def pool_manager(ctx, fast_settings):
    return PoolManager(ctx, fast_settings)


# -----------------------------------------------------------------------------
# API Fixtures
# -----------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory, ctx, pool_manager) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for API testing.

    This client is configured to use the test database and fleet context.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context] = lambda: ctx
    app.dependency_overrides[get_manager] = lambda: pool_manager

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# -----------------------------------------------------------------------------
# Marker-based fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _mark_test(request):
    """Automatically apply markers based on test location."""
    if "unit" in str(request.fspath):
        request.applymarker(pytest.mark.unit)
    elif "integration" in str(request.fspath):
        request.applymarker(pytest.mark.integration)
