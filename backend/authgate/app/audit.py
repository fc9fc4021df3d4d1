"""Security event log: recording and querying audit trail events."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuditEvent, LoginAttempt, SecurityEventSeverity
from .devices import describe_location, mask_address, parse_user_agent
from .logging import get_logger


logger = get_logger("authgate.audit")

_ESCALATED = {SecurityEventSeverity.HIGH, SecurityEventSeverity.CRITICAL}


class SecurityAction:
    """Action names written to the audit trail."""

    LOGIN = "auth.login"
    LOGIN_SECOND_FACTOR = "auth.login_second_factor"
    LOGOUT = "auth.logout"
    REGISTER = "auth.register"
    PASSWORD_RESET = "auth.reset_password"
    REFRESH = "auth.refresh"
    REFRESH_REUSE = "auth.refresh_token_reuse"
    SESSION_REVOKED = "auth.session_revoked"
    TWO_FACTOR_ENABLED = "auth.two_factor_enabled"
    TWO_FACTOR_DISABLED = "auth.two_factor_disabled"
    BACKUP_CODES_REGENERATED = "auth.backup_codes_regenerated"
    ACCOUNT_LOCKED = "security.account_locked"
    ACCOUNT_UNLOCKED = "security.account_unlocked"
    RATE_LIMITED = "security.rate_limited"
    ADDRESS_BLOCKED = "security.address_blocked"
    ADDRESS_UNBLOCKED = "security.address_unblocked"
    BLOCKED_REQUEST = "security.blocked_request"
    BRUTE_FORCE = "security.brute_force_detected"
    SUSPICIOUS_ACTIVITY = "security.suspicious_activity"


async def record_audit_event(
    session: AsyncSession,
    *,
    action: str,
    result: str,
    severity: SecurityEventSeverity = SecurityEventSeverity.LOW,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    """Persist a new audit event using the provided SQLAlchemy session.

    The event is flushed but not committed; the caller owns the transaction.
    High and critical events are additionally emitted at error level.
    """

    event = AuditEvent(
        action=action,
        result=result,
        severity=severity,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        metadata_json=dict(metadata or {}),
    )
    session.add(event)
    await session.flush()
    if severity in _ESCALATED:
        logger.error(
            "security_event",
            action=action,
            result=result,
            severity=severity.value,
            target_user_id=target_user_id,
            ip_address=ip_address,
            details=dict(metadata or {}),
        )
    return event


async def record_login_attempt(
    session: AsyncSession,
    *,
    email: str,
    ip_address: str,
    user_agent: str | None,
    success: bool,
    user_id: int | None = None,
    failure_reason: str | None = None,
    lockout_triggered: bool = False,
) -> bool:
    """Append a login attempt inside a SAVEPOINT.

    A storage error here is logged and reported as ``False``; it never changes
    the authentication decision.
    """

    try:
        async with session.begin_nested():
            session.add(
                LoginAttempt(
                    user_id=user_id,
                    email=email.strip().lower(),
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=success,
                    failure_reason=failure_reason,
                    lockout_triggered=lockout_triggered,
                    created_at=datetime.now(timezone.utc),
                )
            )
    except SQLAlchemyError:
        logger.error(
            "login_attempt_record_failed",
            email=email,
            ip_address=ip_address,
            success=success,
            exc_info=True,
        )
        return False
    return True


@dataclass(frozen=True, slots=True)
class EventPage:
    events: list[AuditEvent]
    total: int


class SecurityEventLog:
    """Read side of the audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def recent(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        severity: SecurityEventSeverity | None = None,
        action: str | None = None,
    ) -> EventPage:
        filters = []
        if severity is not None:
            filters.append(AuditEvent.severity == severity)
        if action:
            filters.append(AuditEvent.action == action)

        total = await self._session.scalar(
            select(func.count()).select_from(AuditEvent).where(*filters)
        )
        result = await self._session.execute(
            select(AuditEvent)
            .where(*filters)
            .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return EventPage(events=list(result.scalars()), total=int(total or 0))

    async def login_history(self, user_id: int, *, limit: int = 20) -> list[dict[str, Any]]:
        result = await self._session.execute(
            select(LoginAttempt)
            .where(LoginAttempt.user_id == user_id)
            .order_by(LoginAttempt.created_at.desc(), LoginAttempt.id.desc())
            .limit(limit)
        )
        history: list[dict[str, Any]] = []
        for attempt in result.scalars():
            device = parse_user_agent(attempt.user_agent)
            history.append(
                {
                    "id": attempt.id,
                    "success": attempt.success,
                    "failure_reason": attempt.failure_reason,
                    "lockout_triggered": attempt.lockout_triggered,
                    "ip_address": mask_address(attempt.ip_address),
                    "location": describe_location(attempt.ip_address),
                    "device": device.device,
                    "browser": device.browser,
                    "os": device.os,
                    "created_at": attempt.created_at,
                }
            )
        return history


__all__ = [
    "EventPage",
    "SecurityAction",
    "SecurityEventLog",
    "record_audit_event",
    "record_login_attempt",
]
