"""Login state machine: first factor, optional second factor, credential minting."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User
from .audit import SecurityAction, record_audit_event
from .devices import DeviceContext
from .errors import SecondFactorRequired
from .logging import get_logger
from .refresh_tokens import IssuedRefreshToken, RefreshTokenManager
from .sessions import IssuedAccess, SessionRegistry
from .two_factor import TwoFactorGate
from .verifier import CredentialVerifier


logger = get_logger("authgate.login")


@dataclass(frozen=True, slots=True)
class LoginResult:
    user: User
    access: IssuedAccess
    refresh: IssuedRefreshToken | None = None


class LoginService:
    """Compose verification, the second-factor gate and credential issuance.

    ``login`` raises :class:`SecondFactorRequired` instead of returning when the
    account has a second factor enabled; the handshake it carries is redeemed
    with :meth:`complete_second_factor`.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        verifier: CredentialVerifier,
        two_factor: TwoFactorGate,
        sessions: SessionRegistry,
        refresh_tokens: RefreshTokenManager,
    ) -> None:
        self._session = session
        self._verifier = verifier
        self._two_factor = two_factor
        self._sessions = sessions
        self._refresh_tokens = refresh_tokens

    async def _finalize(
        self,
        user: User,
        device: DeviceContext,
        *,
        remember_me: bool,
        method: str,
    ) -> LoginResult:
        refresh = None
        lineage_id = None
        if remember_me:
            refresh = await self._refresh_tokens.issue(user, device, remember_me=True)
            lineage_id = refresh.lineage_id
        access = await self._sessions.issue(user, device, lineage_id=lineage_id)

        user.last_login_at = datetime.now(timezone.utc)
        await record_audit_event(
            self._session,
            action=SecurityAction.LOGIN,
            result="success",
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"method": method, "remember_me": remember_me, "session_id": access.session_id},
        )
        await self._session.commit()
        logger.info(
            "login_succeeded",
            user_id=user.id,
            method=method,
            remember_me=remember_me,
            session_id=access.session_id,
        )
        return LoginResult(user=user, access=access, refresh=refresh)

    async def login(
        self,
        identifier: str,
        secret: str,
        device: DeviceContext,
        *,
        remember_me: bool = False,
    ) -> LoginResult:
        user = await self._verifier.verify(identifier, secret, device)

        if await self._two_factor.is_enabled(user.id):
            token, expires_in = await self._two_factor.begin_login(user, remember_me=remember_me)
            await self._session.commit()
            raise SecondFactorRequired(token, expires_in)

        return await self._finalize(user, device, remember_me=remember_me, method="password")

    async def complete_second_factor(
        self,
        handshake_token: str,
        code: str,
        device: DeviceContext,
    ) -> LoginResult:
        completed = await self._two_factor.complete_login(handshake_token, code, device)
        return await self._finalize(
            completed.user,
            device,
            remember_me=completed.remember_me,
            method=completed.method,
        )


__all__ = ["LoginResult", "LoginService"]
