"""Membership and role schemas."""

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel

from .common import Role, ScopeKind


class MembershipRead(BaseModel):
    user_id: uuid.UUID
    scope: ScopeKind
    scope_id: uuid.UUID
    role: Role


class EffectiveRoleRead(BaseModel):
    user_id: uuid.UUID
    workspace_id: uuid.UUID
    project_id: Optional[uuid.UUID] = None
    workspace_role: Role
    project_role: Optional[Role] = None
    effective_role: Role
