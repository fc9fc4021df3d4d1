"""Declarative base, the UTC timestamp column type and the process-wide engine."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, MetaData
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    metadata = metadata


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamp stored in UTC and always read back timezone-aware.

    SQLite drops the offset on write, so values loaded from it are naive;
    lockout and token expiry comparisons need aware datetimes on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def configure_database(database_url: str, **engine_options: Any) -> AsyncEngine:
    """Create the process-wide engine and session factory once; later calls reuse them."""

    global _engine, _session_factory

    if _engine is None:
        _engine = create_async_engine(database_url, **engine_options)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def create_session() -> AsyncSession:
    if _session_factory is None:
        raise RuntimeError("Database has not been configured")
    return _session_factory()


async def dispose_database() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "Base",
    "UTCDateTime",
    "configure_database",
    "create_session",
    "dispose_database",
    "metadata",
]
