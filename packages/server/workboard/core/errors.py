"""
Typed results and the error taxonomy of the core.

Expected failures (cycles, missing permissions, last-owner protection) are not
exceptional: operations return ``Err(error)`` for them and ``Ok(value)`` on
success. Every error carries a stable ``code`` and a ``message`` that is safe
to show to an end user.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Generic, Optional, TypeVar, Union

from workboard_shared.schemas.common import Role, ScopeKind, TaskStatus

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise UnwrapError(self.error)


Result = Union[Ok[T], Err[E]]


class UnwrapError(RuntimeError):
    """Raised when ``unwrap`` is called on an ``Err``."""

    def __init__(self, error: "DomainError") -> None:
        super().__init__(getattr(error, "message", repr(error)))
        self.error = error


def _plural(count: int, noun: str, plural: str | None = None) -> str:
    return f"{count} {noun if count == 1 else (plural or noun + 's')}"


@dataclass(frozen=True)
class DomainError:
    code: ClassVar[str] = "error"

    @property
    def message(self) -> str:
        return self.code.replace("_", " ")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class Conflict(DomainError):
    """A concurrent writer won; re-submitting the same operation is safe."""
    code: ClassVar[str] = "conflict"
    scope: ScopeKind
    scope_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"The {self.scope.value} was modified concurrently, please retry"


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphError(DomainError):
    pass


@dataclass(frozen=True)
class StatusError(DomainError):
    pass


@dataclass(frozen=True)
class TaskNotFound(GraphError, StatusError):
    code: ClassVar[str] = "task_not_found"
    task_id: uuid.UUID

    @property
    def message(self) -> str:
        return "Task not found"


@dataclass(frozen=True)
class SelfReference(GraphError):
    code: ClassVar[str] = "self_reference"
    task_id: uuid.UUID

    @property
    def message(self) -> str:
        return "A task cannot depend on itself"


@dataclass(frozen=True)
class CrossProject(GraphError):
    code: ClassVar[str] = "cross_project"
    task_id: uuid.UUID
    depends_on_id: uuid.UUID

    @property
    def message(self) -> str:
        return "Dependency must be in the same project"


@dataclass(frozen=True)
class WouldCreateCycle(GraphError):
    code: ClassVar[str] = "would_create_cycle"
    task_id: uuid.UUID
    depends_on_id: uuid.UUID
    # depends_on_id -> ... -> task_id, following existing edges
    path: tuple[uuid.UUID, ...] = ()

    @property
    def message(self) -> str:
        return (
            "Adding this dependency would create a circular dependency "
            f"through {_plural(len(self.path), 'task')}"
        )


@dataclass(frozen=True)
class EdgeNotFound(GraphError):
    code: ClassVar[str] = "edge_not_found"
    task_id: uuid.UUID
    depends_on_id: uuid.UUID

    @property
    def message(self) -> str:
        return "Dependency not found"


@dataclass(frozen=True)
class HasDependents(GraphError):
    code: ClassVar[str] = "has_dependents"
    task_id: uuid.UUID
    dependent_ids: tuple[uuid.UUID, ...] = ()

    @property
    def message(self) -> str:
        return (
            f"Cannot delete task: {_plural(len(self.dependent_ids), 'task')} "
            "depend on it; remove those dependencies first"
        )


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlockedByIncompleteDependency(StatusError):
    code: ClassVar[str] = "blocked_by_incomplete_dependency"
    task_id: uuid.UUID
    to_status: TaskStatus
    blocker_ids: tuple[uuid.UUID, ...] = ()

    @property
    def message(self) -> str:
        verb = "mark task done" if self.to_status == TaskStatus.DONE else "start task"
        return (
            f"Cannot {verb}: {_plural(len(self.blocker_ids), 'dependency', 'dependencies')} "
            "incomplete"
        )


@dataclass(frozen=True)
class ReopenBlockedByDependents(StatusError):
    code: ClassVar[str] = "reopen_blocked_by_dependents"
    task_id: uuid.UUID
    dependent_ids: tuple[uuid.UUID, ...] = ()
    to_status: TaskStatus = TaskStatus.TODO

    @property
    def message(self) -> str:
        dependents = _plural(len(self.dependent_ids), "dependent task")
        if self.to_status == TaskStatus.TODO:
            return f"Cannot move task back to TODO: {dependents} already started"
        return f"Cannot reopen task: {dependents} already done"


@dataclass(frozen=True)
class InvalidTransition(StatusError):
    code: ClassVar[str] = "invalid_transition"
    from_status: TaskStatus
    to_status: TaskStatus
    allowed: tuple[TaskStatus, ...] = ()

    @property
    def message(self) -> str:
        allowed = ", ".join(s.value for s in self.allowed) or "none"
        return (
            f"Cannot transition from '{self.from_status.value}' to "
            f"'{self.to_status.value}'. Allowed: {allowed}"
        )


# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AccessError(DomainError):
    pass


@dataclass(frozen=True)
class NoMembership(AccessError):
    code: ClassVar[str] = "no_membership"
    user_id: uuid.UUID
    workspace_id: uuid.UUID

    @property
    def message(self) -> str:
        return "Not a workspace member"


@dataclass(frozen=True)
class InsufficientRole(AccessError):
    code: ClassVar[str] = "insufficient_role"
    required: Role
    actual: Role

    @property
    def message(self) -> str:
        return (
            f"Insufficient permissions: requires {self.required.value}, "
            f"you are {self.actual.value}"
        )


@dataclass(frozen=True)
class LastOwnerProtected(AccessError):
    code: ClassVar[str] = "last_owner_protected"
    workspace_id: uuid.UUID
    user_id: Optional[uuid.UUID] = field(default=None)

    @property
    def message(self) -> str:
        return "A workspace must keep at least one owner; promote another owner first"


@dataclass(frozen=True)
class ScopeNotFound(AccessError):
    code: ClassVar[str] = "scope_not_found"
    scope: ScopeKind
    scope_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"{self.scope.value.capitalize()} not found"


@dataclass(frozen=True)
class MembershipNotFound(AccessError):
    code: ClassVar[str] = "membership_not_found"
    user_id: uuid.UUID
    scope: ScopeKind
    scope_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"User is not a member of this {self.scope.value}"


@dataclass(frozen=True)
class UserNotFound(AccessError):
    code: ClassVar[str] = "user_not_found"
    user_id: uuid.UUID

    @property
    def message(self) -> str:
        return "User not found"
