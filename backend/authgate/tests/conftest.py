"""Common test fixtures for authgate tests."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from typing import Any

# Cheap argon2 parameters keep the suite fast; set before the settings load.
os.environ.setdefault("AUTH__PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("AUTH__PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.authgate.app.config import RateLimitSettings, Settings
from backend.authgate.app.dependencies import get_notification_dispatcher
from backend.authgate.app.email import NotificationDispatcher
from backend.authgate.app.main import create_app
from backend.authgate.app.runtime import SecurityRuntime
from backend.authgate.db.base import Base, configure_database, create_session, dispose_database

from .utils import generous_rate_limits


class InMemoryNotificationDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        super().__init__()
        self.outbox: list[dict[str, Any]] = []

    async def send_password_reset_email(self, *, email: str, token: str, expires_at: datetime) -> None:
        normalized = expires_at if expires_at.tzinfo else expires_at.replace(tzinfo=timezone.utc)
        self.outbox.append(
            {
                "type": "password_reset",
                "email": email,
                "token": token,
                "expires_at": normalized,
                "url": self.password_reset_url(token),
            }
        )

    async def send_lockout_notice(
        self,
        *,
        email: str,
        lockout_expires_at: datetime,
        ip_address: str | None,
    ) -> None:
        self.outbox.append(
            {
                "type": "lockout",
                "email": email,
                "lockout_expires_at": lockout_expires_at,
                "ip_address": ip_address,
            }
        )

    async def send_unlock_notice(self, *, email: str) -> None:
        self.outbox.append({"type": "unlock", "email": email})

    async def send_refresh_token_reuse_alert(
        self,
        *,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        self.outbox.append(
            {
                "type": "refresh_token_reuse",
                "email": email,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
        )


@pytest.fixture
def db_url(tmp_path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'authgate.sqlite3'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Initialise the global async engine with a fresh schema."""

    engine = configure_database(db_url, echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await dispose_database()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> Callable[[], AsyncSession]:
    """Provide a helper to create fresh async sessions on demand."""

    def factory() -> AsyncSession:
        return create_session()

    return factory


@pytest.fixture
def rate_limits() -> RateLimitSettings:
    return generous_rate_limits()


@pytest_asyncio.fixture
async def runtime(rate_limits: RateLimitSettings) -> AsyncIterator[SecurityRuntime]:
    security = SecurityRuntime.from_settings(Settings(rate_limit=rate_limits))
    try:
        yield security
    finally:
        await security.aclose()


@pytest.fixture
def app(db_engine: AsyncEngine, runtime: SecurityRuntime):
    """Create a FastAPI test application wired to the temporary database."""

    application = create_app(runtime=runtime)
    dispatcher = InMemoryNotificationDispatcher()
    application.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher
    application.state.notifications = dispatcher
    return application


@pytest.fixture
def outbox(app) -> list[dict[str, Any]]:
    dispatcher: InMemoryNotificationDispatcher = app.state.notifications
    dispatcher.outbox.clear()
    return dispatcher.outbox


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        yield http
