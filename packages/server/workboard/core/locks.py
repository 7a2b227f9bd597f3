"""
Per-scope serialization points.

Mutations of one project's dependency edges, or of one workspace's memberships,
must be linearized. Inside a process this is an ``asyncio.Lock`` per scope id;
across processes the services additionally take a row lock on the scope row
(``SELECT ... FOR UPDATE``) inside the same transaction.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from workboard_shared.schemas.common import ScopeKind


class ScopeLocks:
    """Registry of asyncio locks keyed by (scope kind, scope id)."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[tuple[ScopeKind, uuid.UUID], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, kind: ScopeKind, scope_id: uuid.UUID) -> asyncio.Lock:
        key = (kind, scope_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, kind: ScopeKind, scope_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self.get(kind, scope_id)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


_default_locks = ScopeLocks()


def get_scope_locks() -> ScopeLocks:
    return _default_locks


async def lock_scope_row(session: AsyncSession, model, scope_id: uuid.UUID):
    """Take the cross-process row lock on a scope row; returns the row or None.

    ``FOR UPDATE`` is a no-op on SQLite, where the in-process lock is the only
    serialization point.
    """
    result = await session.execute(
        select(model).where(model.id == scope_id).with_for_update()
    )
    return result.scalar_one_or_none()
