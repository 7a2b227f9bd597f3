"""
Dependency graph service: acyclic task dependencies and readiness queries.

Handles:
- Edge insertion with circular dependency detection, serialized per project
- Edge removal and task deletion under the configured policy
- Readiness (all direct dependencies DONE) and impact (dependents) queries
- Status changes guarded by readiness
"""

from __future__ import annotations

import uuid
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Iterable, Mapping, Optional

import structlog
from sqlalchemy import delete, or_
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from sqlmodel import select

from workboard.core.config import Settings, get_settings
from workboard.core.database import get_session_factory, is_conflict
from workboard.core.errors import (
    BlockedByIncompleteDependency,
    Conflict,
    CrossProject,
    EdgeNotFound,
    Err,
    GraphError,
    HasDependents,
    InvalidTransition,
    Ok,
    ReopenBlockedByDependents,
    Result,
    SelfReference,
    StatusError,
    TaskNotFound,
    WouldCreateCycle,
)
from workboard.core.locks import ScopeLocks, get_scope_locks, lock_scope_row
from workboard.models.base import utcnow
from workboard.models.dependency import TaskDependency
from workboard.models.project import Project
from workboard.models.task import Task
from workboard_shared.schemas.common import ScopeKind, TaskStatus
from workboard_shared.schemas.tasks import ReadinessRead, StatusChangeRead

log = structlog.get_logger()

Adjacency = Mapping[uuid.UUID, Iterable[uuid.UUID]]

VALID_TRANSITIONS = {
    TaskStatus.TODO: [TaskStatus.IN_PROGRESS],
    TaskStatus.IN_PROGRESS: [TaskStatus.REVIEW, TaskStatus.TODO],
    TaskStatus.REVIEW: [TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.TODO],
    TaskStatus.DONE: [TaskStatus.REVIEW, TaskStatus.TODO],  # reopen
}


# ---------------------------------------------------------------------------
# Pure graph helpers
# ---------------------------------------------------------------------------


def find_path(
    adjacency: Adjacency, start: uuid.UUID, goal: uuid.UUID
) -> Optional[list[uuid.UUID]]:
    """DFS from ``start`` following "depends on" edges.

    Returns the node path ``start .. goal`` if ``goal`` is reachable, else None.
    """
    if start == goal:
        return [start]
    parents: dict[uuid.UUID, Optional[uuid.UUID]] = {start: None}
    stack = [start]
    while stack:
        current = stack.pop()
        for nxt in adjacency.get(current, ()):
            if nxt in parents:
                continue
            parents[nxt] = current
            if nxt == goal:
                path = [nxt]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                path.reverse()
                return path
            stack.append(nxt)
    return None


def topological_order(
    nodes: Iterable[uuid.UUID], adjacency: Adjacency
) -> Optional[list[uuid.UUID]]:
    """Kahn's algorithm; dependencies come before their dependents.

    Returns None if the graph has a cycle.
    """
    order_hint = list(dict.fromkeys(nodes))
    for task_id, deps in adjacency.items():
        order_hint.append(task_id)
        order_hint.extend(deps)
    order_hint = list(dict.fromkeys(order_hint))

    remaining = {n: 0 for n in order_hint}
    reverse: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    for task_id, deps in adjacency.items():
        for dep in deps:
            remaining[task_id] += 1
            reverse[dep].append(task_id)

    queue = deque(n for n in order_hint if remaining[n] == 0)
    order: list[uuid.UUID] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for dependent in reverse.get(current, ()):
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                queue.append(dependent)
    if len(order) != len(order_hint):
        return None
    return order


def is_acyclic(adjacency: Adjacency) -> bool:
    return topological_order((), adjacency) is not None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class DependencyGraphService:
    """Owns every mutation and query over the per-project "depends on" relation."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        locks: Optional[ScopeLocks] = None,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._settings = settings or get_settings()
        self._locks = locks or get_scope_locks()

    # -- serialization -----------------------------------------------------

    @asynccontextmanager
    async def _project_transaction(self, project_id: uuid.UUID):
        async with self._locks.hold(ScopeKind.PROJECT, project_id):
            async with self._session_factory() as session:
                async with session.begin():
                    await lock_scope_row(session, Project, project_id)
                    yield session

    async def _serialized(
        self,
        project_id: uuid.UUID,
        operation: Callable[[AsyncSession], Awaitable[Result]],
    ) -> Result:
        try:
            async with self._project_transaction(project_id) as session:
                return await operation(session)
        except DBAPIError as exc:
            if not is_conflict(exc):
                raise
            log.warning(
                "dependency.conflict",
                project_id=str(project_id),
                error=str(exc.orig),
            )
            return Err(Conflict(ScopeKind.PROJECT, project_id))

    # -- queries shared by reads and writes ----------------------------------

    async def _project_of(self, task_id: uuid.UUID) -> Optional[uuid.UUID]:
        async with self._session_factory() as session:
            result = await session.execute(select(Task.project_id).where(Task.id == task_id))
            return result.scalar_one_or_none()

    @staticmethod
    async def _load_adjacency(
        session: AsyncSession, project_id: uuid.UUID
    ) -> dict[uuid.UUID, set[uuid.UUID]]:
        result = await session.execute(
            select(TaskDependency.task_id, TaskDependency.depends_on_id).where(
                TaskDependency.project_id == project_id
            )
        )
        adjacency: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        for task_id, depends_on_id in result.all():
            adjacency[task_id].add(depends_on_id)
        return adjacency

    @staticmethod
    async def _blocker_ids(session: AsyncSession, task_id: uuid.UUID) -> list[uuid.UUID]:
        result = await session.execute(
            select(Task.id)
            .join(TaskDependency, TaskDependency.depends_on_id == Task.id)
            .where(TaskDependency.task_id == task_id, Task.status != TaskStatus.DONE.value)
        )
        return [row[0] for row in result.all()]

    @staticmethod
    async def _dependent_rows(session: AsyncSession, task_id: uuid.UUID) -> list[Task]:
        result = await session.execute(
            select(Task)
            .join(TaskDependency, TaskDependency.task_id == Task.id)
            .where(TaskDependency.depends_on_id == task_id)
            .order_by(Task.created_at)
        )
        return list(result.scalars().all())

    # -- edges ---------------------------------------------------------------

    async def add_edge(
        self,
        project_id: uuid.UUID,
        task_id: uuid.UUID,
        depends_on_id: uuid.UUID,
    ) -> Result[bool, GraphError | Conflict]:
        """Record that ``task_id`` depends on ``depends_on_id``.

        Returns ``Ok(True)`` when the edge was inserted and ``Ok(False)`` when it
        already existed.
        """
        if task_id == depends_on_id:
            return Err(SelfReference(task_id))

        async def _apply(session: AsyncSession) -> Result:
            result = await session.execute(
                select(Task).where(Task.id.in_([task_id, depends_on_id]))
            )
            tasks = {t.id: t for t in result.scalars().all()}
            for tid in (task_id, depends_on_id):
                if tid not in tasks:
                    return Err(TaskNotFound(tid))
            if any(t.project_id != project_id for t in tasks.values()):
                log.info(
                    "dependency.rejected",
                    reason="cross_project",
                    project_id=str(project_id),
                    task_id=str(task_id),
                    depends_on_id=str(depends_on_id),
                )
                return Err(CrossProject(task_id, depends_on_id))

            existing = await session.execute(
                select(TaskDependency).where(
                    TaskDependency.task_id == task_id,
                    TaskDependency.depends_on_id == depends_on_id,
                )
            )
            if existing.scalar_one_or_none():
                return Ok(False)

            # The new edge closes a cycle iff depends_on_id already
            # (transitively) depends on task_id.
            adjacency = await self._load_adjacency(session, project_id)
            path = find_path(adjacency, depends_on_id, task_id)
            if path is not None:
                log.info(
                    "dependency.rejected",
                    reason="cycle",
                    project_id=str(project_id),
                    task_id=str(task_id),
                    depends_on_id=str(depends_on_id),
                    cycle_length=len(path),
                )
                return Err(WouldCreateCycle(task_id, depends_on_id, tuple(path)))

            session.add(
                TaskDependency(
                    task_id=task_id,
                    depends_on_id=depends_on_id,
                    project_id=project_id,
                )
            )
            await session.flush()
            log.info(
                "dependency.added",
                project_id=str(project_id),
                task_id=str(task_id),
                depends_on_id=str(depends_on_id),
            )
            return Ok(True)

        return await self._serialized(project_id, _apply)

    async def remove_edge(
        self,
        project_id: uuid.UUID,
        task_id: uuid.UUID,
        depends_on_id: uuid.UUID,
    ) -> Result[None, GraphError | Conflict]:
        async def _apply(session: AsyncSession) -> Result:
            result = await session.execute(
                select(TaskDependency).where(
                    TaskDependency.project_id == project_id,
                    TaskDependency.task_id == task_id,
                    TaskDependency.depends_on_id == depends_on_id,
                )
            )
            dep = result.scalar_one_or_none()
            if not dep:
                return Err(EdgeNotFound(task_id, depends_on_id))
            await session.delete(dep)
            await session.flush()
            log.info(
                "dependency.removed",
                project_id=str(project_id),
                task_id=str(task_id),
                depends_on_id=str(depends_on_id),
            )
            return Ok()

        return await self._serialized(project_id, _apply)

    # -- readiness and impact ------------------------------------------------

    async def is_ready(self, task_id: uuid.UUID) -> bool:
        """True iff every direct dependency of ``task_id`` is DONE."""
        async with self._session_factory() as session:
            if await session.get(Task, task_id) is None:
                return False
            return not await self._blocker_ids(session, task_id)

    async def readiness(self, task_id: uuid.UUID) -> Result[ReadinessRead, TaskNotFound]:
        async with self._session_factory() as session:
            if await session.get(Task, task_id) is None:
                return Err(TaskNotFound(task_id))
            blocker_ids = await self._blocker_ids(session, task_id)
        return Ok(ReadinessRead(task_id=task_id, ready=not blocker_ids, blocker_ids=blocker_ids))

    async def dependencies(self, task_id: uuid.UUID) -> list[Task]:
        """Tasks that ``task_id`` directly depends on."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .join(TaskDependency, TaskDependency.depends_on_id == Task.id)
                .where(TaskDependency.task_id == task_id)
                .order_by(Task.created_at)
            )
            return list(result.scalars().all())

    async def blockers(self, task_id: uuid.UUID) -> list[Task]:
        """Direct dependencies of ``task_id`` that are not DONE yet."""
        return [t for t in await self.dependencies(task_id) if not t.is_done]

    async def dependents(self, task_id: uuid.UUID) -> list[Task]:
        """Tasks that directly depend on ``task_id``."""
        async with self._session_factory() as session:
            return await self._dependent_rows(session, task_id)

    async def ready_tasks(self, project_id: uuid.UUID) -> list[Task]:
        """Unfinished tasks in the project whose direct dependencies are all DONE."""
        dependency = aliased(Task)
        blocked = (
            select(TaskDependency.task_id)
            .join(dependency, dependency.id == TaskDependency.depends_on_id)
            .where(
                TaskDependency.project_id == project_id,
                dependency.status != TaskStatus.DONE.value,
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task)
                .where(
                    Task.project_id == project_id,
                    Task.status != TaskStatus.DONE.value,
                    Task.id.not_in(blocked),
                )
                .order_by(Task.created_at)
            )
            return list(result.scalars().all())

    async def execution_order(self, project_id: uuid.UUID) -> list[uuid.UUID]:
        """All task ids of the project, each after everything it depends on."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Task.id).where(Task.project_id == project_id).order_by(Task.created_at)
            )
            task_ids = [row[0] for row in result.all()]
            adjacency = await self._load_adjacency(session, project_id)
        order = topological_order(task_ids, adjacency)
        if order is None:
            # Unreachable while every insert goes through add_edge.
            raise RuntimeError(f"dependency cycle in project {project_id}")
        return order

    # -- status --------------------------------------------------------------

    def _readiness_gated(self, status: TaskStatus) -> bool:
        if status == TaskStatus.DONE:
            return True
        if self._settings.block_start_on_dependencies:
            return status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW)
        return False

    @staticmethod
    def _reopen_blocked(
        task_id: uuid.UUID, new_status: TaskStatus, dependent_ids: list[uuid.UUID]
    ) -> Err:
        log.info(
            "task.status_blocked",
            task_id=str(task_id),
            to_status=new_status.value,
            dependents=len(dependent_ids),
        )
        return Err(ReopenBlockedByDependents(task_id, tuple(dependent_ids), new_status))

    async def on_status_change(
        self, task_id: uuid.UUID, new_status: TaskStatus
    ) -> Result[StatusChangeRead, StatusError | Conflict]:
        """Validate and apply a status change against the dependency graph.

        A task can only become DONE once every direct dependency is DONE. It
        cannot leave DONE while a dependent is DONE, and cannot go back to TODO
        while any of its dependents has started.
        """
        new_status = TaskStatus(new_status)
        project_id = await self._project_of(task_id)
        if project_id is None:
            return Err(TaskNotFound(task_id))

        async def _apply(session: AsyncSession) -> Result:
            task = await session.get(Task, task_id)
            if task is None:
                return Err(TaskNotFound(task_id))
            current = TaskStatus(task.status)
            if current == new_status:
                return Ok(StatusChangeRead(task_id=task_id, from_status=current, to_status=new_status))

            if self._settings.enforce_workflow:
                allowed = VALID_TRANSITIONS.get(current, [])
                if new_status not in allowed:
                    return Err(InvalidTransition(current, new_status, tuple(allowed)))

            if self._readiness_gated(new_status):
                blocker_ids = await self._blocker_ids(session, task_id)
                if blocker_ids:
                    log.info(
                        "task.status_blocked",
                        task_id=str(task_id),
                        to_status=new_status.value,
                        blockers=len(blocker_ids),
                    )
                    return Err(
                        BlockedByIncompleteDependency(task_id, new_status, tuple(blocker_ids))
                    )

            # a DONE task keeps every dependency DONE
            dependents = await self._dependent_rows(session, task_id)
            if current == TaskStatus.DONE:
                finished = [d.id for d in dependents if d.is_done]
                if finished:
                    return self._reopen_blocked(task_id, new_status, finished)
            if new_status == TaskStatus.TODO:
                started = [d.id for d in dependents if d.status != TaskStatus.TODO.value]
                if started:
                    return self._reopen_blocked(task_id, new_status, started)

            task.status = new_status.value
            task.completed_at = (
                utcnow() if new_status == TaskStatus.DONE else None
            )
            session.add(task)
            await session.flush()

            unblocked: list[uuid.UUID] = []
            if new_status == TaskStatus.DONE:
                for dependent in dependents:
                    if dependent.is_done:
                        continue
                    if not await self._blocker_ids(session, dependent.id):
                        unblocked.append(dependent.id)

            log.info(
                "task.status_changed",
                task_id=str(task_id),
                from_status=current.value,
                to_status=new_status.value,
                unblocked=len(unblocked),
            )
            return Ok(
                StatusChangeRead(
                    task_id=task_id,
                    from_status=current,
                    to_status=new_status,
                    unblocked_ids=unblocked,
                )
            )

        return await self._serialized(project_id, _apply)

    # -- deletion ------------------------------------------------------------

    async def delete_task(self, task_id: uuid.UUID) -> Result[None, GraphError | Conflict]:
        """Delete a task together with the edges that reference it.

        Under the ``reject`` policy a task that others depend on is kept and
        ``HasDependents`` is returned; under ``cascade`` those edges go too.
        """
        project_id = await self._project_of(task_id)
        if project_id is None:
            return Err(TaskNotFound(task_id))
        policy = self._settings.task_delete_policy

        async def _apply(session: AsyncSession) -> Result:
            task = await session.get(Task, task_id)
            if task is None:
                return Err(TaskNotFound(task_id))
            dependent_ids = [d.id for d in await self._dependent_rows(session, task_id)]
            if dependent_ids and policy == "reject":
                log.info(
                    "task.delete_rejected",
                    task_id=str(task_id),
                    dependents=len(dependent_ids),
                )
                return Err(HasDependents(task_id, tuple(dependent_ids)))

            await session.execute(
                delete(TaskDependency).where(
                    or_(
                        TaskDependency.task_id == task_id,
                        TaskDependency.depends_on_id == task_id,
                    )
                )
            )
            await session.delete(task)
            await session.flush()
            log.info(
                "task.deleted",
                task_id=str(task_id),
                project_id=str(project_id),
                policy=policy,
                detached_dependents=len(dependent_ids),
            )
            return Ok()

        return await self._serialized(project_id, _apply)
