"""Periodic cleanup of expired credentials, counters and cache entries.

Nothing here is required for correctness: every expiry is also checked when
the row is read.  The sweep only keeps the tables and caches small.
"""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import LoginAttempt, User, UserToken
from ..db.session import session_scope
from .config import MaintenanceSettings, settings
from .logging import get_logger
from .refresh_tokens import RefreshTokenManager
from .sessions import SessionRegistry
from .storage import CacheBackend


logger = get_logger("authgate.maintenance")


@dataclass(frozen=True, slots=True)
class SweepReport:
    sessions: int = 0
    user_tokens: int = 0
    refresh_tokens: int = 0
    login_attempts: int = 0
    lockouts_cleared: int = 0
    cache_entries: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def sweep_expired_state(
    session: AsyncSession,
    *,
    cache: CacheBackend | None = None,
    config: MaintenanceSettings | None = None,
    now: datetime | None = None,
) -> SweepReport:
    """Delete expired rows and clear lapsed lockouts; safe to run repeatedly.

    The caller commits.
    """

    cfg = config or settings.maintenance
    current = now or datetime.now(timezone.utc)

    sessions_removed = await SessionRegistry(session).purge_expired()
    refresh_removed = await RefreshTokenManager(session).purge(
        revoked_retention_days=cfg.revoked_token_retention_days
    )

    tokens = await session.execute(
        delete(UserToken)
        .where(or_(UserToken.expires_at <= current, UserToken.consumed_at.is_not(None)))
        .execution_options(synchronize_session=False)
    )
    attempts = await session.execute(
        delete(LoginAttempt)
        .where(LoginAttempt.created_at < current - timedelta(days=cfg.login_attempt_retention_days))
        .execution_options(synchronize_session=False)
    )
    lockouts = await session.execute(
        update(User)
        .where(User.lockout_expires_at.is_not(None), User.lockout_expires_at <= current)
        .values(
            failed_attempt_count=0,
            last_failed_attempt_at=None,
            locked_at=None,
            lockout_expires_at=None,
        )
        .execution_options(synchronize_session=False)
    )

    evicted = await cache.purge_expired() if cache is not None else 0

    return SweepReport(
        sessions=sessions_removed,
        user_tokens=tokens.rowcount or 0,
        refresh_tokens=refresh_removed,
        login_attempts=attempts.rowcount or 0,
        lockouts_cleared=lockouts.rowcount or 0,
        cache_entries=evicted,
    )


class MaintenanceSweeper:
    """Run :func:`sweep_expired_state` on a fixed interval as an asyncio task."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession],
        cache: CacheBackend | None = None,
        config: MaintenanceSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._config = config or settings.maintenance
        self._task: asyncio.Task[None] | None = None
        self._last_report: SweepReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> SweepReport | None:
        return self._last_report

    async def run_once(self) -> SweepReport:
        async with session_scope(self._session_factory) as session:
            report = await sweep_expired_state(session, cache=self._cache, config=self._config)
        self._last_report = report
        logger.info("maintenance_sweep_completed", **report.as_dict())
        return report

    async def _run(self) -> None:
        interval = self._config.interval_seconds
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("maintenance_sweep_failed", exc_info=True)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if not self._config.enabled or self.running:
            return
        self._task = asyncio.create_task(self._run(), name="authgate-maintenance")
        logger.info("maintenance_sweeper_started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("maintenance_sweeper_stopped")


__all__ = ["MaintenanceSweeper", "SweepReport", "sweep_expired_state"]
