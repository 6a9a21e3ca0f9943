import os
import sqlite3
import sys
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy import types
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sqlite3.register_adapter(UUID, lambda value: str(value))
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("RAILWAY_API_TOKEN", "")

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.security import create_access_token
from app.db.postgres.base import Base
from app.db.postgres.models.tasks import Task, TaskPlatform
from app.db.postgres.session import get_db
from app.services.mobile_container_client import (
    ContainerCreateResult,
    ContainerLogEntry,
    ContainerLogsResult,
    ContainerNotFoundError,
    ContainerStatusResult,
    ProviderContainer,
    ResourceUsage,
)


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class SQLiteUUID(types.TypeDecorator):
    impl = types.String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        import uuid as _uuid

        return _uuid.UUID(value)


def _normalize_sqlite_metadata_types() -> None:
    """Make SQLAlchemy metadata SQLite-friendly before tests build ORM expressions."""
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, (postgresql.ENUM, types.Enum)):
                column.type = types.String(50)
            elif isinstance(column.type, postgresql.UUID):
                column.type = SQLiteUUID()
            elif isinstance(column.type, postgresql.JSONB):
                column.type = types.JSON()


import app.db.postgres.models  # noqa: E402,F401

_normalize_sqlite_metadata_types()


class FakeContainerClient:
    """In-memory stand-in for the provider adapter with scriptable failures."""

    def __init__(self):
        self.containers: Dict[str, str] = {}
        self.created: List[ContainerCreateResult] = []
        self.provider_containers: List[ProviderContainer] = []
        self.next_results: List[ContainerCreateResult] = []
        self.create_error: Optional[BaseException] = None
        self.status_errors: List[BaseException] = []
        self.stop_error: Optional[BaseException] = None
        self.list_error: Optional[BaseException] = None
        self.resource_usage = ResourceUsage(cpu=45.0, ram=512.0, network=1.5)
        self.logs: List[ContainerLogEntry] = []
        self.calls: List[tuple] = []
        self._counter = 0

    def queue_create(self, container_id: str, metro_url: str, *, project_id: Optional[str] = None):
        self.next_results.append(
            ContainerCreateResult(container_id=container_id, metro_url=metro_url, project_id=project_id)
        )

    async def create_container(self, spec):
        self.calls.append(("create", spec.task_id))
        if self.create_error is not None:
            raise self.create_error
        if self.next_results:
            result = self.next_results.pop(0)
        else:
            self._counter += 1
            result = ContainerCreateResult(
                container_id=f"proj-{self._counter}:svc-{self._counter}",
                metro_url=f"https://mobile-{self._counter}.up.railway.app",
                project_id=f"proj-{self._counter}",
                service_id=f"svc-{self._counter}",
            )
        self.containers[result.container_id] = "running"
        self.created.append(result)
        return result

    async def get_container_status(self, container_id: str) -> ContainerStatusResult:
        self.calls.append(("status", container_id))
        if self.status_errors:
            raise self.status_errors.pop(0)
        if container_id not in self.containers:
            raise ContainerNotFoundError(f"{container_id} not found")
        status = self.containers[container_id]
        return ContainerStatusResult(
            status=status,
            resource_usage=self.resource_usage if status == "running" else ResourceUsage(),
            uptime_seconds=120 if status == "running" else None,
            last_health_check=datetime.now(timezone.utc),
        )

    async def start_container(self, container_id: str):
        self.calls.append(("start", container_id))
        if container_id not in self.containers:
            raise ContainerNotFoundError(f"{container_id} not found")
        self.containers[container_id] = "provisioning"
        return {"status": "provisioning"}

    async def stop_container(self, container_id: str):
        self.calls.append(("stop", container_id))
        if self.stop_error is not None:
            raise self.stop_error
        if container_id not in self.containers:
            raise ContainerNotFoundError(f"{container_id} not found")
        self.containers[container_id] = "stopped"
        return {"status": "stopped"}

    async def delete_container(self, container_id: str) -> bool:
        self.calls.append(("delete", container_id))
        self.containers.pop(container_id, None)
        self.provider_containers = [c for c in self.provider_containers if c.container_id != container_id]
        return True

    async def delete_project(self, project_id: str) -> bool:
        self.calls.append(("delete_project", project_id))
        return True

    async def get_container_logs(self, container_id: str, *, limit: int = 100, cursor: Optional[str] = None):
        self.calls.append(("logs", container_id))
        return ContainerLogsResult(logs=list(self.logs[:limit]), has_more=len(self.logs) > limit)

    async def list_containers(self) -> List[ProviderContainer]:
        self.calls.append(("list",))
        if self.list_error is not None:
            raise self.list_error
        return list(self.provider_containers)


@pytest.fixture
def fake_container_client() -> FakeContainerClient:
    return FakeContainerClient()


@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    import app.db.postgres.engine as engine_module

    session_factory = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)

    original_factory = engine_module.sessionmaker
    engine_module.sessionmaker = session_factory

    async with session_factory() as session:
        yield session
        await session.rollback()

    engine_module.sessionmaker = original_factory


@pytest.fixture
def make_task(db_session):
    async def _make_task(
        task_id: str = "task-123",
        *,
        user_id: str = "user-1",
        platform: TaskPlatform = TaskPlatform.mobile,
        sandbox_url: Optional[str] = None,
        deleted: bool = False,
    ) -> Task:
        task = Task(
            id=task_id,
            user_id=user_id,
            prompt="Build a habit tracker app",
            platform=platform,
            status="processing",
            sandbox_url=sandbox_url,
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        db_session.add(task)
        await db_session.commit()
        return task

    return _make_task


@pytest.fixture
def auth_headers():
    def _auth_headers(user_id: str = "user-1", role: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}

    return _auth_headers


@pytest.fixture
def api_components(fake_container_client):
    from app.services.mobile_metro_health import MetroHealthChecker
    from app.services.mobile_qr_code import InMemoryQRCodeCache
    from app.services.mobile_rate_limiter import InMemoryRateLimiter

    return SimpleNamespace(
        container_client=fake_container_client,
        qr_cache=InMemoryQRCodeCache(),
        rate_limiter=InMemoryRateLimiter(max_requests=10, window_seconds=60),
        health_checker=MetroHealthChecker(),
    )


@pytest_asyncio.fixture
async def client(db_session, api_components):
    from httpx import AsyncClient, ASGITransport

    from app.api.dependencies import (
        get_container_client,
        get_metro_health_checker,
        get_qr_code_cache,
        get_rate_limiter,
    )
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_container_client] = lambda: api_components.container_client
    app.dependency_overrides[get_qr_code_cache] = lambda: api_components.qr_cache
    app.dependency_overrides[get_rate_limiter] = lambda: api_components.rate_limiter
    app.dependency_overrides[get_metro_health_checker] = lambda: api_components.health_checker
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
