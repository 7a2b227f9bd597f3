"""Task model."""

from datetime import datetime
from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from workboard_shared.schemas.common import TaskStatus

from .base import TimestampMixin, UUIDMixin, timestamp_field


class Task(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "tasks"

    project_id: uuid.UUID = Field(foreign_key="projects.id", nullable=False, index=True)
    title: str = Field(nullable=False)
    status: str = Field(nullable=False, default=TaskStatus.TODO.value)  # TODO | IN_PROGRESS | REVIEW | DONE
    assignee_id: Optional[uuid.UUID] = Field(default=None, foreign_key="users.id")
    completed_at: Optional[datetime] = timestamp_field(default_now=False)

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE.value
