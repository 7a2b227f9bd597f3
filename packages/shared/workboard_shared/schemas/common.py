from enum import Enum
from typing import Optional


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class Role(str, Enum):
    """Membership role, shared by workspace and project scopes."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    def outranks(self, other: Optional["Role"]) -> bool:
        return other is None or self.rank > other.rank

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank


# Total order used for precedence: OWNER > ADMIN > MEMBER > VIEWER
ROLE_RANK: dict[Role, int] = {
    Role.VIEWER: 0,
    Role.MEMBER: 1,
    Role.ADMIN: 2,
    Role.OWNER: 3,
}


def max_role(*roles: Optional[Role]) -> Optional[Role]:
    present = [r for r in roles if r is not None]
    if not present:
        return None
    return max(present, key=lambda r: r.rank)


def next_role_above(role: Role) -> Role:
    """Lowest role that strictly outranks ``role`` (OWNER is its own ceiling)."""
    for candidate in sorted(Role, key=lambda r: r.rank):
        if candidate.rank > role.rank:
            return candidate
    return Role.OWNER


class ScopeKind(str, Enum):
    WORKSPACE = "workspace"
    PROJECT = "project"


class Action(str, Enum):
    VIEW_WORKSPACE = "view_workspace"
    EDIT_WORKSPACE = "edit_workspace"
    DELETE_WORKSPACE = "delete_workspace"
    MANAGE_MEMBERS = "manage_members"
    VIEW_PROJECT = "view_project"
    CREATE_PROJECT = "create_project"
    EDIT_PROJECT = "edit_project"
    DELETE_PROJECT = "delete_project"
    VIEW_TASK = "view_task"
    CREATE_TASK = "create_task"
    EDIT_TASK = "edit_task"
    DELETE_TASK = "delete_task"
    CHANGE_TASK_STATUS = "change_task_status"
    MANAGE_LABELS = "manage_labels"
    ASSIGN_LABEL = "assign_label"
    COMMENT = "comment"
    UPLOAD_ATTACHMENT = "upload_attachment"
    MANAGE_DEPENDENCIES = "manage_dependencies"
    VIEW_ACTIVITY = "view_activity"
