"""Task and dependency schemas shared between the core and its callers."""

from __future__ import annotations

import uuid
from typing import List

from pydantic import BaseModel, Field

from .common import TaskStatus


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class ReadinessRead(BaseModel):
    task_id: uuid.UUID
    ready: bool
    blocker_ids: List[uuid.UUID] = Field(default_factory=list)

    @property
    def message(self) -> str:
        if self.ready:
            return "All dependencies are complete"
        count = len(self.blocker_ids)
        noun = "dependency" if count == 1 else "dependencies"
        return f"{count} {noun} incomplete"


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------

class StatusChangeRead(BaseModel):
    task_id: uuid.UUID
    from_status: TaskStatus
    to_status: TaskStatus
    unblocked_ids: List[uuid.UUID] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status
