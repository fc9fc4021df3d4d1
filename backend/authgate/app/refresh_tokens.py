"""Issuance, rotation and revocation of long-lived refresh tokens.

Every rotation creates a new row in the same lineage and revokes its parent
with a compare-and-set, so at most one unrevoked token exists per lineage.
Presenting a revoked token is treated as theft: the whole lineage and the
sessions minted from it are revoked.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import RefreshToken, SecurityEventSeverity, User
from .audit import SecurityAction, record_audit_event
from .config import AuthSettings, settings
from .devices import DeviceContext, describe_location, parse_user_agent
from .email import NotificationDispatcher, deliver_safely
from .errors import Forbidden, RefreshTokenExpired, RefreshTokenInvalid, RefreshTokenRevoked
from .lockout import ensure_aware
from .logging import get_logger
from .security import generate_opaque_token, hash_token
from .sessions import IssuedAccess, SessionRegistry


logger = get_logger("authgate.refresh_tokens")


class RevocationReason(str, enum.Enum):
    ROTATED = "rotated"
    LOGOUT = "logout"
    USER_REVOKED = "user_revoked"
    REVOKE_ALL = "revoke_all"
    REUSE_DETECTED = "reuse_detected"
    EXPIRED = "expired"
    PASSWORD_RESET = "password_reset"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class IssuedRefreshToken:
    token: str
    token_id: str
    lineage_id: str
    expires_at: datetime
    remember_me: bool


@dataclass(frozen=True, slots=True)
class RotationResult:
    access: IssuedAccess
    refresh: IssuedRefreshToken
    user: User


class RefreshTokenManager:
    def __init__(
        self,
        session: AsyncSession,
        *,
        sessions: SessionRegistry | None = None,
        notifier: NotificationDispatcher | None = None,
        config: AuthSettings | None = None,
    ) -> None:
        self._session = session
        self._sessions = sessions or SessionRegistry(session)
        self._notifier = notifier
        self._config = config or settings.auth

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(seconds=self._config.remember_me_refresh_token_ttl_seconds)
        return timedelta(seconds=self._config.refresh_token_ttl_seconds)

    async def issue(
        self,
        user: User,
        device: DeviceContext,
        *,
        remember_me: bool = False,
        lineage_id: str | None = None,
        parent_id: str | None = None,
    ) -> IssuedRefreshToken:
        """Mint an opaque refresh token; 30 days with ``remember_me``, else 7."""

        now = self._now()
        token = generate_opaque_token()
        record = RefreshToken(
            id=str(uuid.uuid4()),
            user_id=user.id,
            token_hash=hash_token(token),
            lineage_id=lineage_id or str(uuid.uuid4()),
            parent_id=parent_id,
            remember_me=remember_me,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            expires_at=now + self._ttl(remember_me),
        )
        self._session.add(record)
        await self._session.flush()
        return IssuedRefreshToken(
            token=token,
            token_id=record.id,
            lineage_id=record.lineage_id,
            expires_at=record.expires_at,
            remember_me=remember_me,
        )

    async def _find(self, token: str) -> RefreshToken | None:
        return await self._session.scalar(
            select(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(token))
            .execution_options(populate_existing=True)
        )

    async def _revoke_if_live(self, token_id: str, reason: RevocationReason) -> bool:
        """Compare-and-set revocation; False when the row was already revoked."""

        now = self._now()
        result = await self._session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now, revoked_reason=reason.value, last_used_at=now)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def revoke_lineage(self, lineage_id: str, reason: RevocationReason) -> int:
        result = await self._session.execute(
            update(RefreshToken)
            .where(RefreshToken.lineage_id == lineage_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=self._now(), revoked_reason=reason.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def _handle_reuse(self, record: RefreshToken, device: DeviceContext | None) -> None:
        user_id = record.user_id
        lineage_id = record.lineage_id
        revoked = await self.revoke_lineage(lineage_id, RevocationReason.REUSE_DETECTED)
        sessions_deleted = await self._sessions.revoke_lineage(lineage_id)
        await record_audit_event(
            self._session,
            action=SecurityAction.REFRESH_REUSE,
            result="revoked",
            severity=SecurityEventSeverity.HIGH,
            actor_user_id=user_id,
            target_user_id=user_id,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            metadata={
                "lineage_id": lineage_id,
                "token_id": record.id,
                "revoked_tokens": revoked,
                "deleted_sessions": sessions_deleted,
            },
        )
        await self._session.commit()
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=user_id,
            lineage_id=lineage_id,
            revoked_tokens=revoked,
            deleted_sessions=sessions_deleted,
        )

        if self._notifier is not None:
            user = await self._session.get(User, user_id, populate_existing=True)
            if user is not None:
                await deliver_safely(
                    self._notifier.send_refresh_token_reuse_alert(
                        email=user.email,
                        ip_address=device.ip_address if device else None,
                        user_agent=device.user_agent if device else None,
                    ),
                    kind="refresh_token_reuse",
                )

    async def redeem(self, token: str, *, device: DeviceContext | None = None) -> tuple[RefreshToken, User]:
        """Validate ``token`` and return its record with the owning user.

        Expired tokens are revoked on touch.  A revoked token triggers reuse
        handling and raises :class:`RefreshTokenRevoked`.
        """

        record = await self._find(token)
        if record is None:
            raise RefreshTokenInvalid(reason="refresh_token_unknown")

        if record.revoked_at is not None:
            if record.revoked_reason == RevocationReason.EXPIRED.value:
                raise RefreshTokenExpired(reason="refresh_token_expired")
            await self._handle_reuse(record, device)
            raise RefreshTokenRevoked(reason="refresh_token_reused")

        if ensure_aware(record.expires_at) <= self._now():
            await self._revoke_if_live(record.id, RevocationReason.EXPIRED)
            await self._session.commit()
            raise RefreshTokenExpired(reason="refresh_token_expired")

        user = await self._session.get(User, record.user_id, populate_existing=True)
        if user is None or not user.active:
            raise RefreshTokenInvalid(reason="refresh_token_owner_inactive")
        return record, user

    async def refresh_access(self, token: str, device: DeviceContext) -> IssuedAccess:
        """Mint a new access token from a refresh token without rotating it."""

        record, user = await self.redeem(token, device=device)
        access = await self._sessions.issue(user, device, lineage_id=record.lineage_id)
        await self._session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record.id)
            .values(last_used_at=self._now())
            .execution_options(synchronize_session=False)
        )
        return access

    async def rotate(self, token: str, device: DeviceContext) -> RotationResult:
        """Exchange ``token`` for a new access token and a new refresh token.

        Order: validate, capture state, mint replacements, then revoke the old
        token with a compare-and-set.  Losing the compare-and-set means another
        request already used the token, which is handled as reuse.
        """

        record, user = await self.redeem(token, device=device)
        old_id = record.id
        lineage_id = record.lineage_id
        remember_me = bool(record.remember_me)

        access = await self._sessions.issue(user, device, lineage_id=lineage_id)
        refresh = await self.issue(
            user,
            device,
            remember_me=remember_me,
            lineage_id=lineage_id,
            parent_id=old_id,
        )

        if not await self._revoke_if_live(old_id, RevocationReason.ROTATED):
            # Discard the replacements minted above before revoking the lineage.
            await self._session.rollback()
            replay = await self._session.get(RefreshToken, old_id, populate_existing=True)
            if replay is not None:
                await self._handle_reuse(replay, device)
            raise RefreshTokenRevoked(reason="refresh_token_concurrent_rotation")

        logger.info("refresh_token_rotated", user_id=user.id, lineage_id=lineage_id, parent_id=old_id)
        return RotationResult(access=access, refresh=refresh, user=user)

    async def revoke(self, token: str, reason: RevocationReason = RevocationReason.LOGOUT) -> bool:
        record = await self._find(token)
        if record is None:
            return False
        return await self._revoke_if_live(record.id, reason)

    async def revoke_by_id(
        self,
        token_id: str,
        owner_id: int,
        reason: RevocationReason = RevocationReason.USER_REVOKED,
    ) -> bool:
        """Revoke one token after asserting ``owner_id`` owns it."""

        record = await self._session.get(RefreshToken, token_id, populate_existing=True)
        if record is None:
            return False
        if record.user_id != owner_id:
            raise Forbidden("Cannot revoke another user's refresh token", reason="refresh_token_not_owned")
        return await self._revoke_if_live(record.id, reason)

    async def revoke_all(
        self,
        user_id: int,
        *,
        except_token: str | None = None,
        reason: RevocationReason = RevocationReason.REVOKE_ALL,
    ) -> int:
        stmt = update(RefreshToken).where(
            RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None)
        )
        if except_token:
            stmt = stmt.where(RefreshToken.token_hash != hash_token(except_token))
        result = await self._session.execute(
            stmt.values(revoked_at=self._now(), revoked_reason=reason.value).execution_options(
                synchronize_session=False
            )
        )
        count = result.rowcount or 0
        logger.info("refresh_tokens_revoked", user_id=user_id, count=count, reason=reason.value)
        return count

    async def _active(self, user_id: int) -> list[RefreshToken]:
        result = await self._session.execute(
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked_at.is_(None),
                RefreshToken.expires_at > self._now(),
            )
            .order_by(RefreshToken.created_at.desc())
        )
        return list(result.scalars())

    async def list(self, user_id: int) -> list[dict[str, Any]]:
        tokens: list[dict[str, Any]] = []
        for record in await self._active(user_id):
            device = parse_user_agent(record.user_agent)
            tokens.append(
                {
                    "id": record.id,
                    "device": device.device,
                    "location": describe_location(record.ip_address),
                    "created_at": ensure_aware(record.created_at),
                    "expires_at": ensure_aware(record.expires_at),
                    "last_used_at": ensure_aware(record.last_used_at),
                    "remember_me": bool(record.remember_me),
                }
            )
        return tokens

    async def statistics(self, user_id: int) -> dict[str, Any]:
        active = await self._active(user_id)
        created = [ensure_aware(record.created_at) for record in active]
        return {
            "total_active": len(active),
            "remember_me": sum(1 for record in active if record.remember_me),
            "oldest": min(created, default=None),
            "newest": max(created, default=None),
        }

    async def purge(self, *, revoked_retention_days: int = 7) -> int:
        """Delete expired tokens.

        A revoked row outlives its revocation until it has expired, so replaying it
        is still detected as reuse, and it is kept at least ``revoked_retention_days``
        after revocation.
        """

        now = self._now()
        cutoff = now - timedelta(days=revoked_retention_days)
        result = await self._session.execute(
            delete(RefreshToken)
            .where(
                RefreshToken.expires_at <= now,
                or_(
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.revoked_at <= cutoff,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_active(self, user_id: int) -> int:
        count = await self._session.scalar(
            select(func.count())
            .select_from(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked_at.is_(None),
                RefreshToken.expires_at > self._now(),
            )
        )
        return int(count or 0)


__all__ = [
    "IssuedRefreshToken",
    "RefreshTokenManager",
    "RevocationReason",
    "RotationResult",
]
