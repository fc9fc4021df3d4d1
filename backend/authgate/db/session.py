"""Session lifetimes: one per request, or one per unit of background work."""
from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from .base import create_session


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session.

    Services commit their own writes, including the audit trail written before a
    rejection is raised, so nothing is committed here.
    """

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def session_scope(
    factory: Callable[[], AsyncSession] = create_session,
) -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back on any error; used by scripts and the sweeper."""

    session = factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = ["get_session", "session_scope"]
