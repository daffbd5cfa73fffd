"""
Hive - Test Fixtures
====================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hive.api.deps import create_access_token, get_dispatcher
from hive.api.main import app
from hive.core.config import settings
from hive.core.database import Base, enable_sqlite_foreign_keys, get_db
from hive.core.models import Project, Task
from hive.core.pipeline.dispatch import AgentDispatcher, DispatchHandle
from hive.core.pipeline.errors import DispatchError
from hive.core.pipeline.orchestrator import PipelineOrchestrator


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# ==========================================================================
# Fake Agent Runtime
# ==========================================================================

class FakeDispatcher(AgentDispatcher):
    """
    Records start requests instead of starting agents.

    Set ``fail_with`` to make the next starts raise DispatchError, or
    ``crash_with`` to make them raise an arbitrary exception.
    """

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.fail_with: Optional[str] = None
        self.crash_with: Optional[Exception] = None

    async def start(
        self,
        instruction: str,
        *,
        model: str,
        label: str,
        workdir: Optional[str] = None,
    ) -> DispatchHandle:
        self.calls.append(
            {"instruction": instruction, "model": model, "label": label, "workdir": workdir}
        )
        if self.crash_with is not None:
            raise self.crash_with
        if self.fail_with:
            raise DispatchError(self.fail_with)
        key = f"session-{len(self.calls)}"
        return DispatchHandle(session_key=key, raw={"sessionKey": key})

    @property
    def last_instruction(self) -> str:
        return self.calls[-1]["instruction"]


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def orchestrator(db_session: AsyncSession, dispatcher: FakeDispatcher) -> PipelineOrchestrator:
    return PipelineOrchestrator(db_session, dispatcher, settings)


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    dispatcher: FakeDispatcher,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and dispatcher overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_dispatcher() -> AsyncGenerator[AgentDispatcher, None]:
        yield dispatcher

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = override_get_dispatcher

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Auth Fixtures
# ==========================================================================

ADMIN_TEST_PASSWORD = "HiveAdmin123!"


@pytest.fixture
def admin_password(monkeypatch: pytest.MonkeyPatch) -> str:
    """Configure a bcrypt hash for the operator and return the plain password."""
    from passlib.hash import bcrypt

    monkeypatch.setattr(settings, "ADMIN_PASSWORD_HASH", bcrypt.hash(ADMIN_TEST_PASSWORD))
    return ADMIN_TEST_PASSWORD


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Authorization headers for the operator."""
    token = create_access_token(settings.ADMIN_USERNAME)
    return {"Authorization": f"Bearer {token}"}


# ==========================================================================
# Data Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def project(orchestrator: PipelineOrchestrator) -> Project:
    return await orchestrator.create_project(
        name="hive-demo",
        description="Demo project",
        repo_path="/srv/repos/hive-demo",
    )


@pytest_asyncio.fixture
async def task(orchestrator: PipelineOrchestrator, project: Project) -> Task:
    """Plan-stage task that starts its pipeline on greenlight."""
    return await orchestrator.create_task(
        project_id=project.id,
        title="Add CSV export",
        spec="Export the report table as CSV.",
        auto_run=True,
        max_retries=2,
    )
