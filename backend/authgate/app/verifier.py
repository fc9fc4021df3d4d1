"""First-factor verification: blocklist, login budget, lockout, then the secret."""
from __future__ import annotations

from typing import NoReturn

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import SecurityEventSeverity, User
from .audit import SecurityAction, record_audit_event, record_login_attempt
from .blocklist import AddressBlocklist
from .config import AuthSettings, settings
from .devices import DeviceContext
from .email import NotificationDispatcher, deliver_safely
from .errors import AccountLocked, AddressBlocked, EmailNotVerified, InvalidCredentials, RateLimited
from .lockout import LockoutTracker
from .logging import get_logger
from .rate_limit import RateLimitClass, RateLimitDecision, RateLimiter
from .security import burn_password_check, verify_password
from .threats import ThreatMonitor


logger = get_logger("authgate.verifier")


class CredentialVerifier:
    """Decide whether ``(identifier, secret)`` names an account, in a fixed order.

    1. the client address must not be blocked;
    2. the ``login`` budget for the address must not be exhausted;
    3. a locked account is rejected before its secret is compared;
    4. unknown and inactive accounts fail exactly like a wrong secret;
    5. a wrong secret counts toward lockout and brute-force detection;
    6. a correct secret clears the counters and re-scores the address; a high
       score flags or blocks the address for later requests, not this one.

    Every rejection is committed before it is raised, so the caller never
    sees an outcome whose audit trail does not exist yet.  A successful
    verification is left uncommitted for the caller to finalize.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        rate_limiter: RateLimiter,
        blocklist: AddressBlocklist,
        lockout: LockoutTracker | None = None,
        threats: ThreatMonitor | None = None,
        notifier: NotificationDispatcher | None = None,
        config: AuthSettings | None = None,
    ) -> None:
        self._session = session
        self._rate_limiter = rate_limiter
        self._blocklist = blocklist
        self._lockout = lockout or LockoutTracker(session)
        self._threats = threats or ThreatMonitor(session, blocklist=blocklist)
        self._notifier = notifier
        self._config = config or settings.auth

    async def _find_user(self, identifier: str) -> User | None:
        return await self._session.scalar(
            select(User)
            .where(func.lower(User.email) == identifier)
            .execution_options(populate_existing=True)
        )

    async def _reject_blocked(self, email: str, device: DeviceContext) -> NoReturn:
        await record_audit_event(
            self._session,
            action=SecurityAction.BLOCKED_REQUEST,
            result="blocked",
            severity=SecurityEventSeverity.MEDIUM,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"email": email},
        )
        await self._session.commit()
        raise AddressBlocked(reason="address_blocked")

    async def _reject_rate_limited(
        self, email: str, device: DeviceContext, decision: RateLimitDecision
    ) -> NoReturn:
        await record_audit_event(
            self._session,
            action=SecurityAction.RATE_LIMITED,
            result="rejected",
            severity=SecurityEventSeverity.MEDIUM,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"email": email, "rate_class": RateLimitClass.LOGIN.value, "limit": decision.limit},
        )
        await self._session.commit()
        raise RateLimited(
            limit=decision.limit,
            reset_at=decision.reset_at,
            retry_after=decision.retry_after,
            reason="login_rate_limited",
        )

    async def _reject_unknown(self, email: str, user: User | None, device: DeviceContext) -> NoReturn:
        reason = "unknown_account" if user is None else "inactive_account"
        await record_login_attempt(
            self._session,
            email=email,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=False,
            user_id=user.id if user is not None else None,
            failure_reason=reason,
        )
        await record_audit_event(
            self._session,
            action=SecurityAction.LOGIN,
            result="failure",
            target_user_id=user.id if user is not None else None,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"reason": reason, "email": email},
        )
        await self._threats.evaluate_failure(device.ip_address, user_agent=device.user_agent)
        await self._session.commit()
        raise InvalidCredentials(reason=reason)

    async def _reject_secret(self, user: User, device: DeviceContext) -> NoReturn:
        outcome = await self._lockout.record_failure(user)
        await record_login_attempt(
            self._session,
            email=user.email,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=False,
            user_id=user.id,
            failure_reason="invalid_password",
            lockout_triggered=outcome.lockout_triggered,
        )
        await record_audit_event(
            self._session,
            action=SecurityAction.LOGIN,
            result="failure",
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={
                "reason": "invalid_password",
                "failed_attempts": outcome.failed_attempt_count,
                "attempts_remaining": outcome.status.attempts_remaining,
            },
        )
        if outcome.lockout_triggered:
            await record_audit_event(
                self._session,
                action=SecurityAction.ACCOUNT_LOCKED,
                result="locked",
                severity=SecurityEventSeverity.HIGH,
                target_user_id=user.id,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                metadata={
                    "failed_attempts": outcome.failed_attempt_count,
                    "lockout_expires_at": outcome.status.lockout_expires_at.isoformat()
                    if outcome.status.lockout_expires_at
                    else None,
                },
            )
        await self._threats.evaluate_failure(device.ip_address, user_agent=device.user_agent)
        await self._session.commit()

        status = outcome.status
        if not status.is_locked or status.lockout_expires_at is None:
            raise InvalidCredentials(reason="invalid_password")

        if outcome.lockout_triggered and self._notifier is not None:
            await deliver_safely(
                self._notifier.send_lockout_notice(
                    email=user.email,
                    lockout_expires_at=status.lockout_expires_at,
                    ip_address=device.ip_address,
                ),
                kind="lockout",
            )
        raise AccountLocked(status.lockout_expires_at, reason="lockout_triggered")

    async def verify(self, identifier: str, secret: str, device: DeviceContext) -> User:
        """Return the account named by ``identifier`` if ``secret`` matches it."""

        email = identifier.strip().lower()

        if await self._blocklist.is_blocked(device.ip_address):
            await self._reject_blocked(email, device)

        decision = await self._rate_limiter.check(device.ip_address, RateLimitClass.LOGIN)
        if not decision.allowed:
            await self._reject_rate_limited(email, device, decision)

        user = await self._find_user(email)
        if user is not None:
            lock = await self._lockout.status(user)
            if lock.is_locked and lock.lockout_expires_at is not None:
                await record_login_attempt(
                    self._session,
                    email=email,
                    ip_address=device.ip_address,
                    user_agent=device.user_agent,
                    success=False,
                    user_id=user.id,
                    failure_reason="account_locked",
                )
                await self._session.commit()
                raise AccountLocked(lock.lockout_expires_at, reason="account_locked")

        if user is None or not user.active:
            # Spend the same hashing effort so response time does not reveal the account.
            burn_password_check(secret)
            await self._reject_unknown(email, user, device)

        if not verify_password(user.password_hash, secret):
            await self._reject_secret(user, device)

        await self._lockout.reset(user)

        if self._config.require_verified_email and not user.email_verified:
            await record_login_attempt(
                self._session,
                email=email,
                ip_address=device.ip_address,
                user_agent=device.user_agent,
                success=False,
                user_id=user.id,
                failure_reason="email_not_verified",
            )
            await self._session.commit()
            raise EmailNotVerified(reason="email_not_verified")

        await record_login_attempt(
            self._session,
            email=email,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=True,
            user_id=user.id,
        )
        await self._threats.analyze(device.ip_address, device.user_agent)
        logger.info("credentials_verified", user_id=user.id, ip_address=device.ip_address)
        return user


__all__ = ["CredentialVerifier"]
