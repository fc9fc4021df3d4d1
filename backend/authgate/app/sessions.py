"""Durable registry of issued access credentials."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuthSession, User
from .config import settings
from .devices import DeviceContext, describe_location, mask_address, parse_user_agent
from .errors import Forbidden, SessionNotFound
from .lockout import ensure_aware
from .logging import get_logger
from .security import create_access_token, hash_token


logger = get_logger("authgate.sessions")


@dataclass(frozen=True, slots=True)
class IssuedAccess:
    """An access token together with the session row that backs it."""

    token: str
    session_id: str
    expires_at: datetime
    expires_in: int


class SessionRegistry:
    """One row per issued access token; a missing or expired row invalidates it.

    A valid signature is never enough on its own: every authenticated request
    must be checked with :meth:`lookup` (or :meth:`is_valid`).
    """

    def __init__(self, session: AsyncSession, *, ttl_seconds: int | None = None) -> None:
        self._session = session
        self._ttl_seconds = int(ttl_seconds or settings.auth.access_token_ttl_seconds)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create(
        self,
        *,
        user_id: int,
        credential_ref: str,
        device: DeviceContext,
        session_id: str | None = None,
        expires_at: datetime | None = None,
        lineage_id: str | None = None,
    ) -> AuthSession:
        now = self._now()
        record = AuthSession(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=credential_ref,
            lineage_id=lineage_id,
            user_agent=(device.user_agent or None),
            ip_address=device.ip_address,
            expires_at=expires_at or now + timedelta(seconds=self._ttl_seconds),
            last_activity_at=now,
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def issue(
        self,
        user: User,
        device: DeviceContext,
        *,
        lineage_id: str | None = None,
    ) -> IssuedAccess:
        """Mint an access token and its session row in the same unit of work."""

        now = self._now()
        session_id = str(uuid.uuid4())
        token, expires_at = create_access_token(
            subject=user.id,
            session_id=session_id,
            expires_in=self._ttl_seconds,
            now=now,
        )
        await self.create(
            user_id=user.id,
            credential_ref=hash_token(token),
            device=device,
            session_id=session_id,
            expires_at=expires_at,
            lineage_id=lineage_id,
        )
        logger.info("session_issued", user_id=user.id, session_id=session_id, lineage_id=lineage_id)
        return IssuedAccess(
            token=token,
            session_id=session_id,
            expires_at=expires_at,
            expires_in=self._ttl_seconds,
        )

    async def lookup(self, credential_ref: str) -> AuthSession | None:
        record = await self._session.scalar(
            select(AuthSession).where(AuthSession.token_hash == credential_ref)
        )
        if record is None:
            return None
        if ensure_aware(record.expires_at) <= self._now():
            return None
        return record

    async def is_valid(self, credential_ref: str) -> bool:
        return await self.lookup(credential_ref) is not None

    async def touch(self, credential_ref: str) -> None:
        await self._session.execute(
            update(AuthSession)
            .where(AuthSession.token_hash == credential_ref)
            .values(last_activity_at=self._now())
            .execution_options(synchronize_session=False)
        )

    async def _active(self, user_id: int) -> list[AuthSession]:
        result = await self._session.execute(
            select(AuthSession)
            .where(AuthSession.user_id == user_id, AuthSession.expires_at > self._now())
            .order_by(AuthSession.last_activity_at.desc(), AuthSession.created_at.desc())
        )
        return list(result.scalars())

    async def list(self, user_id: int, *, current_credential_ref: str | None = None) -> list[dict[str, Any]]:
        sessions: list[dict[str, Any]] = []
        for record in await self._active(user_id):
            device = parse_user_agent(record.user_agent)
            sessions.append(
                {
                    "id": record.id,
                    "device": device.device,
                    "browser": device.browser,
                    "os": device.os,
                    "location": describe_location(record.ip_address),
                    "ip_address": mask_address(record.ip_address),
                    "created_at": ensure_aware(record.created_at),
                    "last_active": ensure_aware(record.last_activity_at or record.created_at),
                    "expires_at": ensure_aware(record.expires_at),
                    "current": current_credential_ref is not None
                    and record.token_hash == current_credential_ref,
                }
            )
        return sessions

    async def stats(self, user_id: int) -> dict[str, Any]:
        active = await self._active(user_id)
        day_ago = self._now() - timedelta(hours=24)
        devices = {parse_user_agent(record.user_agent).device for record in active}
        recent = [record for record in active if ensure_aware(record.created_at) >= day_ago]
        oldest = min((ensure_aware(record.created_at) for record in active), default=None)
        return {
            "total_active": len(active),
            "unique_devices": len(devices),
            "recent_logins": len(recent),
            "oldest_session": oldest,
        }

    async def revoke(self, user_id: int, session_id: str, *, current_credential_ref: str | None) -> None:
        """Delete another of the caller's sessions; the current one is refused."""

        record = await self._session.scalar(
            select(AuthSession).where(AuthSession.id == session_id, AuthSession.user_id == user_id)
        )
        if record is None:
            raise SessionNotFound(reason="session_not_found")
        if current_credential_ref is not None and record.token_hash == current_credential_ref:
            raise Forbidden("Cannot revoke the current session", reason="revoke_current_session")
        await self._session.delete(record)
        await self._session.flush()
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def revoke_all(self, user_id: int, *, except_credential_ref: str | None = None) -> int:
        stmt = delete(AuthSession).where(AuthSession.user_id == user_id)
        if except_credential_ref is not None:
            stmt = stmt.where(AuthSession.token_hash != except_credential_ref)
        result = await self._session.execute(stmt.execution_options(synchronize_session=False))
        count = result.rowcount or 0
        logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    async def revoke_lineage(self, lineage_id: str) -> int:
        result = await self._session.execute(
            delete(AuthSession)
            .where(AuthSession.lineage_id == lineage_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_by_credential(self, credential_ref: str) -> bool:
        result = await self._session.execute(
            delete(AuthSession)
            .where(AuthSession.token_hash == credential_ref)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def count_active(self, user_id: int) -> int:
        count = await self._session.scalar(
            select(func.count())
            .select_from(AuthSession)
            .where(AuthSession.user_id == user_id, AuthSession.expires_at > self._now())
        )
        return int(count or 0)

    async def purge_expired(self) -> int:
        result = await self._session.execute(
            delete(AuthSession)
            .where(AuthSession.expires_at <= self._now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


__all__ = ["IssuedAccess", "SessionRegistry"]
