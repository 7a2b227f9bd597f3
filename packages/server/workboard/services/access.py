"""
Access resolver: effective roles, permission checks and role assignment.

A user's effective role on a project is the maximum of their workspace role
and their project role; the workspace role is a floor that a project-level
grant can raise but never lower. All membership mutations of one workspace
(including its projects' memberships) are serialized so the last-owner check
and the following write observe the same state.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import delete, func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from workboard.core.database import get_session_factory, is_conflict
from workboard.core.errors import (
    AccessError,
    Conflict,
    Err,
    InsufficientRole,
    LastOwnerProtected,
    MembershipNotFound,
    NoMembership,
    Ok,
    Result,
    ScopeNotFound,
    TaskNotFound,
    UserNotFound,
)
from workboard.core.locks import ScopeLocks, get_scope_locks, lock_scope_row
from workboard.models.membership import ProjectMembership, WorkspaceMembership
from workboard.models.project import Project
from workboard.models.task import Task
from workboard.models.user import User
from workboard.models.workspace import Workspace
from workboard_shared.schemas.common import Action, Role, ScopeKind, max_role, next_role_above
from workboard_shared.schemas.memberships import EffectiveRoleRead, MembershipRead

log = structlog.get_logger()

ACTION_MIN_ROLE: dict[Action, Role] = {
    Action.VIEW_WORKSPACE: Role.VIEWER,
    Action.VIEW_PROJECT: Role.VIEWER,
    Action.VIEW_TASK: Role.VIEWER,
    Action.VIEW_ACTIVITY: Role.VIEWER,
    Action.CREATE_PROJECT: Role.MEMBER,
    Action.EDIT_TASK: Role.MEMBER,
    Action.CHANGE_TASK_STATUS: Role.MEMBER,
    Action.ASSIGN_LABEL: Role.MEMBER,
    Action.COMMENT: Role.MEMBER,
    Action.UPLOAD_ATTACHMENT: Role.MEMBER,
    Action.MANAGE_DEPENDENCIES: Role.MEMBER,
    Action.EDIT_WORKSPACE: Role.ADMIN,
    Action.EDIT_PROJECT: Role.ADMIN,
    Action.DELETE_PROJECT: Role.ADMIN,
    Action.MANAGE_MEMBERS: Role.ADMIN,
    Action.CREATE_TASK: Role.ADMIN,
    Action.DELETE_TASK: Role.ADMIN,
    Action.MANAGE_LABELS: Role.ADMIN,
    Action.DELETE_WORKSPACE: Role.OWNER,
}


@dataclass(frozen=True)
class Resource:
    """Target of a permission check: a workspace, or a project within one.

    ``workspace_id`` may be omitted for project resources; it is then looked
    up from the project.
    """

    workspace_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None

    def __post_init__(self) -> None:
        if self.workspace_id is None and self.project_id is None:
            raise ValueError("Resource needs a workspace_id or a project_id")


def check_precedence(
    actor_role: Role, current: Optional[Role], new_role: Optional[Role]
) -> Optional[InsufficientRole]:
    """Whether ``actor_role`` may move a member from ``current`` to ``new_role``.

    Managing members needs ADMIN. Non-owners must strictly outrank both the
    member's current role and the role being granted; only an OWNER can
    create, demote or remove another OWNER. ``None`` means "no membership".
    """
    if not actor_role.at_least(Role.ADMIN):
        return InsufficientRole(required=Role.ADMIN, actual=actor_role)
    if actor_role == Role.OWNER:
        return None
    ceiling = max_role(current, new_role)
    if ceiling is not None and not actor_role.outranks(ceiling):
        return InsufficientRole(required=next_role_above(ceiling), actual=actor_role)
    return None


class AccessResolver:
    """Computes effective roles and guards membership changes."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        locks: Optional[ScopeLocks] = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._locks = locks or get_scope_locks()

    # -- serialization -------------------------------------------------------

    @asynccontextmanager
    async def _workspace_transaction(self, workspace_id: uuid.UUID):
        async with self._locks.hold(ScopeKind.WORKSPACE, workspace_id):
            async with self._session_factory() as session:
                async with session.begin():
                    workspace = await lock_scope_row(session, Workspace, workspace_id)
                    yield session, workspace

    async def _serialized(
        self,
        workspace_id: uuid.UUID,
        operation: Callable[[AsyncSession], Awaitable[Result]],
    ) -> Result:
        try:
            async with self._workspace_transaction(workspace_id) as (session, workspace):
                if workspace is None:
                    return Err(ScopeNotFound(ScopeKind.WORKSPACE, workspace_id))
                return await operation(session)
        except DBAPIError as exc:
            if not is_conflict(exc):
                raise
            log.warning(
                "membership.conflict",
                workspace_id=str(workspace_id),
                error=str(exc.orig),
            )
            return Err(Conflict(ScopeKind.WORKSPACE, workspace_id))

    # -- lookups -------------------------------------------------------------

    @staticmethod
    async def _workspace_membership(
        session: AsyncSession, user_id: uuid.UUID, workspace_id: uuid.UUID
    ) -> Optional[WorkspaceMembership]:
        result = await session.execute(
            select(WorkspaceMembership).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _project_membership(
        session: AsyncSession, user_id: uuid.UUID, project_id: uuid.UUID
    ) -> Optional[ProjectMembership]:
        result = await session.execute(
            select(ProjectMembership).where(
                ProjectMembership.user_id == user_id,
                ProjectMembership.project_id == project_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _owner_count(session: AsyncSession, workspace_id: uuid.UUID) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(WorkspaceMembership)
            .where(
                WorkspaceMembership.workspace_id == workspace_id,
                WorkspaceMembership.role == Role.OWNER.value,
            )
        )
        return result.scalar_one()

    async def _workspace_of_project(self, project_id: uuid.UUID) -> Optional[uuid.UUID]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Project.workspace_id).where(Project.id == project_id)
            )
            return result.scalar_one_or_none()

    async def _resolve(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID,
        project_id: Optional[uuid.UUID],
    ) -> Result[EffectiveRoleRead, AccessError]:
        membership = await self._workspace_membership(session, user_id, workspace_id)
        if membership is None:
            return Err(NoMembership(user_id, workspace_id))
        workspace_role = membership.as_role

        project_role: Optional[Role] = None
        if project_id is not None:
            project = await session.get(Project, project_id)
            if project is None or project.workspace_id != workspace_id:
                return Err(ScopeNotFound(ScopeKind.PROJECT, project_id))
            project_membership = await self._project_membership(session, user_id, project_id)
            if project_membership is not None:
                project_role = project_membership.as_role

        return Ok(
            EffectiveRoleRead(
                user_id=user_id,
                workspace_id=workspace_id,
                project_id=project_id,
                workspace_role=workspace_role,
                project_role=project_role,
                effective_role=max_role(workspace_role, project_role),
            )
        )

    # -- effective role and permission checks --------------------------------

    async def describe_access(
        self,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID,
        project_id: Optional[uuid.UUID] = None,
    ) -> Result[EffectiveRoleRead, AccessError]:
        """Effective role together with the grants it was computed from."""
        async with self._session_factory() as session:
            return await self._resolve(session, user_id, workspace_id, project_id)

    async def effective_role(
        self,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID,
        project_id: Optional[uuid.UUID] = None,
    ) -> Result[Role, AccessError]:
        result = await self.describe_access(user_id, workspace_id, project_id)
        if isinstance(result, Err):
            return result
        return Ok(result.value.effective_role)

    async def authorize(
        self, user_id: uuid.UUID, action: Action, resource: Resource
    ) -> Result[Role, AccessError]:
        """Check that ``user_id`` may perform ``action`` on ``resource``.

        Returns the user's effective role on success.
        """
        action = Action(action)
        required = ACTION_MIN_ROLE[action]
        workspace_id = resource.workspace_id
        if workspace_id is None:
            workspace_id = await self._workspace_of_project(resource.project_id)
            if workspace_id is None:
                return Err(ScopeNotFound(ScopeKind.PROJECT, resource.project_id))

        result = await self.effective_role(user_id, workspace_id, resource.project_id)
        if isinstance(result, Err):
            log.info(
                "access.denied",
                user_id=str(user_id),
                action=action.value,
                reason=result.error.code,
            )
            return result
        actual = result.value
        if not actual.at_least(required):
            log.info(
                "access.denied",
                user_id=str(user_id),
                action=action.value,
                reason=InsufficientRole.code,
                required=required.value,
                actual=actual.value,
            )
            return Err(InsufficientRole(required=required, actual=actual))
        return Ok(actual)

    async def authorize_task_edit(
        self, user_id: uuid.UUID, task_id: uuid.UUID
    ) -> Result[Role, AccessError | TaskNotFound]:
        """EDIT_TASK where a plain MEMBER may only edit tasks assigned to them."""
        async with self._session_factory() as session:
            task = await session.get(Task, task_id)
        if task is None:
            return Err(TaskNotFound(task_id))
        result = await self.authorize(user_id, Action.EDIT_TASK, Resource(project_id=task.project_id))
        if isinstance(result, Err):
            return result
        if result.value == Role.MEMBER and task.assignee_id != user_id:
            return Err(InsufficientRole(required=Role.ADMIN, actual=Role.MEMBER))
        return result

    # -- workspace memberships -----------------------------------------------

    async def assign_workspace_role(
        self,
        actor_id: uuid.UUID,
        target_user_id: uuid.UUID,
        workspace_id: uuid.UUID,
        new_role: Role,
    ) -> Result[Optional[Role], AccessError | Conflict]:
        """Grant ``new_role`` in the workspace, creating the membership if needed.

        Returns the target's previous role (None if they were not a member).
        """
        new_role = Role(new_role)

        async def _apply(session: AsyncSession) -> Result:
            actor = await self._workspace_membership(session, actor_id, workspace_id)
            if actor is None:
                return Err(NoMembership(actor_id, workspace_id))
            target = await self._workspace_membership(session, target_user_id, workspace_id)
            if target is None and await session.get(User, target_user_id) is None:
                return Err(UserNotFound(target_user_id))
            current = target.as_role if target is not None else None

            denied = check_precedence(actor.as_role, current, new_role)
            if denied is not None:
                log.info(
                    "membership.assign_denied",
                    scope=ScopeKind.WORKSPACE.value,
                    workspace_id=str(workspace_id),
                    actor_id=str(actor_id),
                    target_user_id=str(target_user_id),
                    new_role=new_role.value,
                )
                return Err(denied)
            if current == new_role:
                return Ok(current)

            if current == Role.OWNER and await self._owner_count(session, workspace_id) <= 1:
                log.warning(
                    "membership.last_owner_protected",
                    workspace_id=str(workspace_id),
                    target_user_id=str(target_user_id),
                )
                return Err(LastOwnerProtected(workspace_id, target_user_id))

            if target is None:
                target = WorkspaceMembership(
                    user_id=target_user_id, workspace_id=workspace_id, role=new_role.value
                )
            else:
                target.role = new_role.value
            session.add(target)
            await session.flush()

            log.info(
                "membership.role_assigned",
                scope=ScopeKind.WORKSPACE.value,
                workspace_id=str(workspace_id),
                actor_id=str(actor_id),
                target_user_id=str(target_user_id),
                from_role=current.value if current else None,
                to_role=new_role.value,
            )
            return Ok(current)

        return await self._serialized(workspace_id, _apply)

    async def remove_workspace_member(
        self,
        actor_id: uuid.UUID,
        target_user_id: uuid.UUID,
        workspace_id: uuid.UUID,
    ) -> Result[Role, AccessError | Conflict]:
        """Remove a member and their project memberships in this workspace.

        Members may always leave on their own; removing someone else follows
        the same precedence as a role change.
        """

        async def _apply(session: AsyncSession) -> Result:
            actor = await self._workspace_membership(session, actor_id, workspace_id)
            if actor is None:
                return Err(NoMembership(actor_id, workspace_id))
            target = await self._workspace_membership(session, target_user_id, workspace_id)
            if target is None:
                return Err(MembershipNotFound(target_user_id, ScopeKind.WORKSPACE, workspace_id))
            current = target.as_role

            if actor_id != target_user_id:
                denied = check_precedence(actor.as_role, current, None)
                if denied is not None:
                    return Err(denied)

            if current == Role.OWNER and await self._owner_count(session, workspace_id) <= 1:
                log.warning(
                    "membership.last_owner_protected",
                    workspace_id=str(workspace_id),
                    target_user_id=str(target_user_id),
                )
                return Err(LastOwnerProtected(workspace_id, target_user_id))

            await session.execute(
                delete(ProjectMembership).where(
                    ProjectMembership.user_id == target_user_id,
                    ProjectMembership.project_id.in_(
                        select(Project.id).where(Project.workspace_id == workspace_id)
                    ),
                )
            )
            await session.delete(target)
            await session.flush()

            log.info(
                "membership.removed",
                scope=ScopeKind.WORKSPACE.value,
                workspace_id=str(workspace_id),
                actor_id=str(actor_id),
                target_user_id=str(target_user_id),
                role=current.value,
            )
            return Ok(current)

        return await self._serialized(workspace_id, _apply)

    # -- project memberships -------------------------------------------------

    async def assign_project_role(
        self,
        actor_id: uuid.UUID,
        target_user_id: uuid.UUID,
        project_id: uuid.UUID,
        new_role: Role,
    ) -> Result[Optional[Role], AccessError | Conflict]:
        """Grant ``new_role`` on a project to a member of its workspace.

        The actor's authority is their effective role on the project. There is
        no owner-cardinality rule at project scope.
        """
        new_role = Role(new_role)
        workspace_id = await self._workspace_of_project(project_id)
        if workspace_id is None:
            return Err(ScopeNotFound(ScopeKind.PROJECT, project_id))

        async def _apply(session: AsyncSession) -> Result:
            resolved = await self._resolve(session, actor_id, workspace_id, project_id)
            if isinstance(resolved, Err):
                return resolved
            actor_role = resolved.value.effective_role

            if await self._workspace_membership(session, target_user_id, workspace_id) is None:
                return Err(NoMembership(target_user_id, workspace_id))
            target = await self._project_membership(session, target_user_id, project_id)
            current = target.as_role if target is not None else None

            denied = check_precedence(actor_role, current, new_role)
            if denied is not None:
                log.info(
                    "membership.assign_denied",
                    scope=ScopeKind.PROJECT.value,
                    project_id=str(project_id),
                    actor_id=str(actor_id),
                    target_user_id=str(target_user_id),
                    new_role=new_role.value,
                )
                return Err(denied)
            if current == new_role:
                return Ok(current)

            if target is None:
                target = ProjectMembership(
                    user_id=target_user_id, project_id=project_id, role=new_role.value
                )
            else:
                target.role = new_role.value
            session.add(target)
            await session.flush()

            log.info(
                "membership.role_assigned",
                scope=ScopeKind.PROJECT.value,
                project_id=str(project_id),
                actor_id=str(actor_id),
                target_user_id=str(target_user_id),
                from_role=current.value if current else None,
                to_role=new_role.value,
            )
            return Ok(current)

        return await self._serialized(workspace_id, _apply)

    async def remove_project_member(
        self,
        actor_id: uuid.UUID,
        target_user_id: uuid.UUID,
        project_id: uuid.UUID,
    ) -> Result[Role, AccessError | Conflict]:
        workspace_id = await self._workspace_of_project(project_id)
        if workspace_id is None:
            return Err(ScopeNotFound(ScopeKind.PROJECT, project_id))

        async def _apply(session: AsyncSession) -> Result:
            resolved = await self._resolve(session, actor_id, workspace_id, project_id)
            if isinstance(resolved, Err):
                return resolved
            target = await self._project_membership(session, target_user_id, project_id)
            if target is None:
                return Err(MembershipNotFound(target_user_id, ScopeKind.PROJECT, project_id))
            current = target.as_role

            if actor_id != target_user_id:
                denied = check_precedence(resolved.value.effective_role, current, None)
                if denied is not None:
                    return Err(denied)

            await session.delete(target)
            await session.flush()
            log.info(
                "membership.removed",
                scope=ScopeKind.PROJECT.value,
                project_id=str(project_id),
                actor_id=str(actor_id),
                target_user_id=str(target_user_id),
                role=current.value,
            )
            return Ok(current)

        return await self._serialized(workspace_id, _apply)

    # -- listings ------------------------------------------------------------

    async def owner_count(self, workspace_id: uuid.UUID) -> int:
        async with self._session_factory() as session:
            return await self._owner_count(session, workspace_id)

    async def list_workspace_members(self, workspace_id: uuid.UUID) -> list[MembershipRead]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkspaceMembership).where(WorkspaceMembership.workspace_id == workspace_id)
            )
            rows = result.scalars().all()
        members = [
            MembershipRead(
                user_id=m.user_id,
                scope=ScopeKind.WORKSPACE,
                scope_id=m.workspace_id,
                role=m.as_role,
            )
            for m in rows
        ]
        return sorted(members, key=lambda m: (-m.role.rank, str(m.user_id)))

    async def list_project_members(self, project_id: uuid.UUID) -> list[MembershipRead]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProjectMembership).where(ProjectMembership.project_id == project_id)
            )
            rows = result.scalars().all()
        members = [
            MembershipRead(
                user_id=m.user_id,
                scope=ScopeKind.PROJECT,
                scope_id=m.project_id,
                role=m.as_role,
            )
            for m in rows
        ]
        return sorted(members, key=lambda m: (-m.role.rank, str(m.user_id)))
