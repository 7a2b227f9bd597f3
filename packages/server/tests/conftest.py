"""
Shared fixtures: a throwaway SQLite database per test plus seeded aggregates.

Seeding writes rows directly so tests can set up states (several owners,
project grants, finished tasks) without going through the guarded operations.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from workboard.core.config import Settings
from workboard.core.database import get_session_context, init_db
from workboard.core.locks import ScopeLocks
from workboard.models.membership import ProjectMembership, WorkspaceMembership
from workboard.models.user import User
from workboard.services.access import AccessResolver
from workboard.services.dependency_graph import DependencyGraphService
from workboard.services.workspaces import create_project, create_task, create_workspace
from workboard_shared.schemas.common import Role, TaskStatus


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'workboard.db'}",
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def locks():
    return ScopeLocks()


@pytest.fixture
def graph(session_factory, settings, locks):
    return DependencyGraphService(session_factory=session_factory, settings=settings, locks=locks)


@pytest.fixture
def access(session_factory, locks):
    return AccessResolver(session_factory=session_factory, locks=locks)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session_factory):
    async def _make(name: str = "user") -> uuid.UUID:
        async with get_session_context(session_factory) as session:
            user = User(email=f"{name}-{uuid.uuid4().hex[:8]}@example.com", display_name=name)
            session.add(user)
            await session.flush()
            return user.id

    return _make


@pytest.fixture
def make_workspace(session_factory):
    async def _make(creator_id: uuid.UUID, name: str = "Acme") -> uuid.UUID:
        async with get_session_context(session_factory) as session:
            workspace = await create_workspace(
                session,
                name=name,
                slug=f"{name.lower()}-{uuid.uuid4().hex[:6]}",
                creator_id=creator_id,
            )
            return workspace.id

    return _make


@pytest.fixture
def make_project(session_factory):
    async def _make(workspace_id: uuid.UUID, name: str = "Launch") -> uuid.UUID:
        async with get_session_context(session_factory) as session:
            project = await create_project(session, workspace_id=workspace_id, name=name)
            return project.id

    return _make


@pytest.fixture
def make_task(session_factory):
    async def _make(
        project_id: uuid.UUID,
        title: str = "task",
        *,
        status: TaskStatus = TaskStatus.TODO,
        assignee_id: uuid.UUID | None = None,
    ) -> uuid.UUID:
        async with get_session_context(session_factory) as session:
            task = await create_task(
                session,
                project_id=project_id,
                title=title,
                status=status,
                assignee_id=assignee_id,
            )
            return task.id

    return _make


@pytest.fixture
def grant(session_factory):
    """Insert a membership row directly, bypassing precedence rules."""

    async def _grant(
        user_id: uuid.UUID,
        role: Role,
        *,
        workspace_id: uuid.UUID | None = None,
        project_id: uuid.UUID | None = None,
    ) -> None:
        async with get_session_context(session_factory) as session:
            if workspace_id is not None:
                session.add(
                    WorkspaceMembership(user_id=user_id, workspace_id=workspace_id, role=role.value)
                )
            if project_id is not None:
                session.add(
                    ProjectMembership(user_id=user_id, project_id=project_id, role=role.value)
                )

    return _grant


@pytest.fixture
async def owner_id(make_user):
    return await make_user("owner")


@pytest.fixture
async def workspace_id(make_workspace, owner_id):
    return await make_workspace(owner_id)


@pytest.fixture
async def project_id(make_project, workspace_id):
    return await make_project(workspace_id)
