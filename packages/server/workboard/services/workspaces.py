"""
Workspace service: creation of the aggregates the core operates on.

A workspace is created together with its creator's OWNER membership so the
"at least one owner" invariant holds from the first commit.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from workboard.models.membership import WorkspaceMembership
from workboard.models.project import Project
from workboard.models.task import Task
from workboard.models.workspace import Workspace
from workboard_shared.schemas.common import Role, TaskStatus

log = structlog.get_logger()


async def create_workspace(
    session: AsyncSession,
    *,
    name: str,
    slug: str,
    creator_id: uuid.UUID,
) -> Workspace:
    """Create a workspace and make the creator its owner."""
    workspace = Workspace(name=name, slug=slug)
    session.add(workspace)
    await session.flush()

    session.add(
        WorkspaceMembership(
            user_id=creator_id,
            workspace_id=workspace.id,
            role=Role.OWNER.value,
        )
    )
    await session.flush()

    log.info("workspace.created", workspace_id=str(workspace.id), slug=slug, creator=str(creator_id))
    return workspace


async def create_project(
    session: AsyncSession,
    *,
    workspace_id: uuid.UUID,
    name: str,
    description: Optional[str] = None,
) -> Project:
    project = Project(workspace_id=workspace_id, name=name, description=description)
    session.add(project)
    await session.flush()
    log.info("project.created", project_id=str(project.id), workspace_id=str(workspace_id))
    return project


async def create_task(
    session: AsyncSession,
    *,
    project_id: uuid.UUID,
    title: str,
    assignee_id: Optional[uuid.UUID] = None,
    status: TaskStatus = TaskStatus.TODO,
) -> Task:
    task = Task(
        project_id=project_id,
        title=title,
        assignee_id=assignee_id,
        status=TaskStatus(status).value,
    )
    session.add(task)
    await session.flush()
    return task
