# SQLModel definitions; imported here so the metadata is populated before create_all.
from .base import RoleMixin, TimestampMixin, UUIDMixin  # noqa: F401
from .user import User  # noqa: F401
from .workspace import Workspace  # noqa: F401
from .project import Project  # noqa: F401
from .task import Task  # noqa: F401
from .dependency import TaskDependency  # noqa: F401
from .membership import WorkspaceMembership, ProjectMembership  # noqa: F401
