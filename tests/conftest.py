"""Shared test fixtures for the access decision engine."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from access_engine.core.database.engine import init_db
from access_engine.features.permissions.attributes import AttributeStore
from access_engine.features.permissions.audit import AuditRecorder, InMemoryAuditSink
from access_engine.features.permissions.grants import CatalogEntry, GrantIndex
from access_engine.features.permissions.hierarchy import RoleHierarchyGraph
from access_engine.features.permissions.resolver import InMemoryUserDirectory, PermissionResolver
from access_engine.features.permissions.service import create_access_engine


# ---------------------------------------------------------------------------
# In-memory components
# ---------------------------------------------------------------------------


@pytest.fixture
def grants() -> GrantIndex:
    index = GrantIndex()
    index.load(
        roles=[
            CatalogEntry(1, "viewer"),
            CatalogEntry(2, "editor"),
            CatalogEntry(3, "manager"),
            CatalogEntry(4, "retired", is_active=False),
        ],
        resources=[CatalogEntry(10, "doc"), CatalogEntry(11, "salary"), CatalogEntry(12, "archive", is_active=False)],
        actions=[CatalogEntry(20, "read"), CatalogEntry(21, "view"), CatalogEntry(22, "write")],
    )
    return index


@pytest.fixture
def hierarchy() -> RoleHierarchyGraph:
    return RoleHierarchyGraph()


@pytest.fixture
def user_attributes() -> AttributeStore:
    return AttributeStore("user")


@pytest.fixture
def resource_attributes() -> AttributeStore:
    return AttributeStore("resource")


@pytest.fixture
def directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def recorder(audit_sink) -> AuditRecorder:
    return AuditRecorder(audit_sink, max_size=100, batch_size=10)


@pytest.fixture
def resolver(directory, hierarchy, grants, user_attributes, resource_attributes, recorder) -> PermissionResolver:
    return PermissionResolver(
        directory, hierarchy, grants, user_attributes, resource_attributes, recorder=recorder, timeout=2.0
    )


# ---------------------------------------------------------------------------
# Database-backed engine
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'access.db'}", poolclass=NullPool)
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def access_engine(session_factory):
    engine = create_access_engine(session_factory, timeout=5.0)
    await engine.start()
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def admin_id(access_engine) -> int:
    """A user holding a role allowed to manage the policy and read the audit trail."""
    admin = access_engine.admin
    await admin.create_role("admin")
    await admin.grant_simple("admin", "permissions", "manage")
    await admin.grant_simple("admin", "audit", "read")
    user = await admin.create_user("admin")
    await admin.assign_role(user.id, "admin")
    return user.id


@pytest_asyncio.fixture
async def client(access_engine):
    from access_engine.main import app

    app.state.access_engine = access_engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.state.access_engine = None
