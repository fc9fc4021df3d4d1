"""Common FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.session import get_session
from .email import NotificationDispatcher
from .lockout import LockoutTracker
from .login import LoginService
from .refresh_tokens import RefreshTokenManager
from .runtime import SecurityRuntime
from .sessions import SessionRegistry
from .threats import ThreatMonitor
from .two_factor import TwoFactorGate
from .verifier import CredentialVerifier


_notification_dispatcher = NotificationDispatcher()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Return the configured notification dispatcher instance."""

    return _notification_dispatcher


def get_runtime(request: Request) -> SecurityRuntime:
    """Return the security runtime built for this application."""

    return request.app.state.security


def get_lockout_tracker(db: AsyncSession = Depends(get_session)) -> LockoutTracker:
    return LockoutTracker(db)


def get_session_registry(db: AsyncSession = Depends(get_session)) -> SessionRegistry:
    return SessionRegistry(db)


def get_threat_monitor(
    db: AsyncSession = Depends(get_session),
    runtime: SecurityRuntime = Depends(get_runtime),
) -> ThreatMonitor:
    return ThreatMonitor(db, blocklist=runtime.blocklist)


def get_refresh_token_manager(
    db: AsyncSession = Depends(get_session),
    sessions: SessionRegistry = Depends(get_session_registry),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> RefreshTokenManager:
    return RefreshTokenManager(db, sessions=sessions, notifier=notifier)


def get_two_factor_gate(
    db: AsyncSession = Depends(get_session),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> TwoFactorGate:
    return TwoFactorGate(db, lockout=lockout, notifier=notifier)


def get_credential_verifier(
    db: AsyncSession = Depends(get_session),
    runtime: SecurityRuntime = Depends(get_runtime),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    threats: ThreatMonitor = Depends(get_threat_monitor),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> CredentialVerifier:
    return CredentialVerifier(
        db,
        rate_limiter=runtime.rate_limiter,
        blocklist=runtime.blocklist,
        lockout=lockout,
        threats=threats,
        notifier=notifier,
    )


def get_login_service(
    db: AsyncSession = Depends(get_session),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    two_factor: TwoFactorGate = Depends(get_two_factor_gate),
    sessions: SessionRegistry = Depends(get_session_registry),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> LoginService:
    return LoginService(
        db,
        verifier=verifier,
        two_factor=two_factor,
        sessions=sessions,
        refresh_tokens=refresh_tokens,
    )


__all__ = [
    "get_credential_verifier",
    "get_lockout_tracker",
    "get_login_service",
    "get_notification_dispatcher",
    "get_refresh_token_manager",
    "get_runtime",
    "get_session",
    "get_session_registry",
    "get_threat_monitor",
    "get_two_factor_gate",
]
