"""Workspace and project memberships (join tables keyed by user and scope)."""

import uuid

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from .base import RoleMixin


class WorkspaceMembership(RoleMixin, SQLModel, table=True):
    __tablename__ = "workspace_memberships"
    __table_args__ = (
        # owner counts
        Index("ix_workspace_memberships_workspace_role", "workspace_id", "role"),
    )

    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    workspace_id: uuid.UUID = Field(foreign_key="workspaces.id", primary_key=True)


class ProjectMembership(RoleMixin, SQLModel, table=True):
    __tablename__ = "project_memberships"

    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", primary_key=True, index=True)
