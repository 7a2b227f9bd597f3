"""Shared columns for the core tables."""

from datetime import datetime, timezone
from typing import Any
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from workboard_shared.schemas.common import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def timestamp_field(*, default_now: bool = True, **column_kwargs: Any) -> Any:
    """Timezone-aware timestamp column; ``default_now=False`` makes it nullable."""
    if not default_now:
        return Field(default=None, sa_type=sa.DateTime(timezone=True))
    return Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now(), **column_kwargs},
        sa_type=sa.DateTime(timezone=True),
    )


class UUIDMixin(SQLModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True, nullable=False)


class TimestampMixin(SQLModel):
    created_at: datetime = timestamp_field()
    updated_at: datetime = timestamp_field(onupdate=utcnow)


class RoleMixin(SQLModel):
    """Role column shared by workspace and project memberships."""

    role: str = Field(nullable=False, default=Role.MEMBER.value)  # OWNER | ADMIN | MEMBER | VIEWER

    @property
    def as_role(self) -> Role:
        return Role(self.role)
