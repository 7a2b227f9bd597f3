"""
Database connection, session management and conflict classification.
"""

from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from workboard.core.config import get_settings

# SQLSTATEs a caller can resolve by re-submitting the same operation:
# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}
# A concurrent insert of the same key; other integrity violations are real faults.
UNIQUE_VIOLATION = "23505"


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        future=True,
    )


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine | None = None):
    """Create all tables (development only; use migrations in production)."""
    import workboard.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session_context(factory: async_sessionmaker[AsyncSession] | None = None):
    """Context manager for a unit of work outside a request lifecycle."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    cause = getattr(orig, "__cause__", None)
    return getattr(cause, "sqlstate", None)


def is_conflict(exc: Exception) -> bool:
    """True when ``exc`` is a concurrency conflict rather than a real fault."""
    if not isinstance(exc, DBAPIError):
        return False
    sqlstate = _sqlstate(exc)
    message = str(exc.orig).lower()
    if isinstance(exc, IntegrityError):
        return sqlstate == UNIQUE_VIOLATION or "unique constraint failed" in message
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in message
