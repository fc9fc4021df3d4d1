"""Second-factor enrolment and the password-verified to authenticated handshake."""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, NoReturn

import pyotp
from cryptography.exceptions import InvalidTag
from pyotp.utils import strings_equal
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from ..db.models import (
    SecurityEventSeverity,
    TwoFactorBackupCode,
    TwoFactorSecret,
    User,
    UserTokenPurpose,
)
from .audit import SecurityAction, record_audit_event, record_login_attempt
from .config import AuthSettings, settings
from .crypto import decrypt_totp_secret, encrypt_totp_secret
from .devices import DeviceContext
from .email import NotificationDispatcher, deliver_safely
from .errors import (
    AccountLocked,
    HandshakeExpiredOrReused,
    InvalidSecondFactorCode,
    TwoFactorAlreadyEnabled,
    TwoFactorNotConfigured,
)
from .lockout import LockoutTracker, ensure_aware
from .logging import get_logger
from .security import (
    TokenDecodeError,
    create_handshake_token,
    decode_handshake_token,
    hash_password,
    verify_password,
)
from .token_service import TokenService


logger = get_logger("authgate.two_factor")

_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_BACKUP_CODE_LENGTH = 8
_TOTP_DIGITS = 6


def _clean_mfa_code(code: str) -> str:
    return "".join(ch for ch in code.strip() if ch.isalnum()).upper()


def _generate_backup_code() -> str:
    return "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_CODE_LENGTH))


@dataclass(frozen=True, slots=True)
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    backup_codes: list[str]


@dataclass(frozen=True, slots=True)
class CompletedSecondFactor:
    """Identity released by a consumed handshake."""

    user: User
    remember_me: bool
    method: str


class TwoFactorGate:
    """TOTP enrolment plus the single-use handshake issued after the first factor.

    Secrets are stored AES-GCM encrypted and bound to their owner.  Backup codes
    are stored as argon2 hashes and consumed with a compare-and-set on
    ``used_at``.  A TOTP code is likewise spent once: its time step must move
    ``last_used_step`` forward.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        lockout: LockoutTracker | None = None,
        notifier: NotificationDispatcher | None = None,
        config: AuthSettings | None = None,
        key: bytes | None = None,
    ) -> None:
        self._session = session
        self._lockout = lockout or LockoutTracker(session)
        self._notifier = notifier
        self._config = config or settings.auth
        self._key = key or settings.encryption_key

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def _secret_record(self, user_id: int) -> TwoFactorSecret | None:
        return await self._session.scalar(
            select(TwoFactorSecret)
            .where(TwoFactorSecret.user_id == user_id)
            .execution_options(populate_existing=True)
        )

    async def is_enabled(self, user_id: int) -> bool:
        record = await self._secret_record(user_id)
        return bool(record is not None and record.enabled)

    def _totp(self, record: TwoFactorSecret) -> pyotp.TOTP | None:
        try:
            secret = decrypt_totp_secret(record.secret_enc, user_id=record.user_id, key=self._key)
        except (InvalidTag, ValueError):
            logger.error("totp_secret_decrypt_failed", user_id=record.user_id)
            return None
        return pyotp.TOTP(secret)

    def _match_totp_step(self, record: TwoFactorSecret, code: str) -> int | None:
        """Return the time step ``code`` belongs to, searching the allowed clock drift."""

        if len(code) != _TOTP_DIGITS or not code.isdigit():
            return None
        totp = self._totp(record)
        if totp is None:
            return None
        current = totp.timecode(self._now())
        window = self._config.totp_valid_window
        for step in range(current - window, current + window + 1):
            if strings_equal(code, totp.generate_otp(step)):
                return step
        return None

    async def _verify_totp(self, record: TwoFactorSecret, code: str) -> bool:
        """Accept a TOTP code at most once.

        The matched time step must be later than the last accepted one; the step
        is claimed with a compare-and-set so two requests cannot both spend it.
        """

        step = self._match_totp_step(record, code)
        if step is None:
            return False
        if record.last_used_step is not None and step <= record.last_used_step:
            logger.warning("totp_code_replayed", user_id=record.user_id, step=step)
            return False
        claimed = await self._session.execute(
            update(TwoFactorSecret)
            .where(
                TwoFactorSecret.id == record.id,
                or_(TwoFactorSecret.last_used_step.is_(None), TwoFactorSecret.last_used_step < step),
            )
            .values(last_used_step=step)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            logger.warning("totp_code_replayed", user_id=record.user_id, step=step)
            return False
        set_committed_value(record, "last_used_step", step)
        return True

    async def _consume_backup_code(self, user_id: int, code: str) -> bool:
        if len(code) != _BACKUP_CODE_LENGTH:
            return False
        result = await self._session.execute(
            select(TwoFactorBackupCode)
            .where(TwoFactorBackupCode.user_id == user_id, TwoFactorBackupCode.used_at.is_(None))
            .execution_options(populate_existing=True)
        )
        for record in result.scalars():
            if not verify_password(record.code_hash, code):
                continue
            claimed = await self._session.execute(
                update(TwoFactorBackupCode)
                .where(TwoFactorBackupCode.id == record.id, TwoFactorBackupCode.used_at.is_(None))
                .values(used_at=self._now())
                .execution_options(synchronize_session=False)
            )
            return bool(claimed.rowcount)
        return False

    async def _verify_code(self, record: TwoFactorSecret, code: str) -> str | None:
        """Return the factor that matched ``code``: ``totp``, ``backup_code`` or ``None``."""

        cleaned = _clean_mfa_code(code)
        if not cleaned:
            return None
        if await self._verify_totp(record, cleaned):
            return "totp"
        if await self._consume_backup_code(record.user_id, cleaned):
            return "backup_code"
        return None

    async def _replace_backup_codes(self, user_id: int) -> list[str]:
        await self._session.execute(
            delete(TwoFactorBackupCode)
            .where(TwoFactorBackupCode.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        codes = [_generate_backup_code() for _ in range(self._config.backup_code_count)]
        for code in codes:
            self._session.add(TwoFactorBackupCode(user_id=user_id, code_hash=hash_password(code)))
        await self._session.flush()
        return codes

    async def _require_enabled(self, user: User) -> TwoFactorSecret:
        record = await self._secret_record(user.id)
        if record is None or not record.enabled:
            raise TwoFactorNotConfigured(reason="two_factor_not_enabled")
        return record

    async def setup(self, user: User) -> TwoFactorSetup:
        """Generate a pending secret and a fresh set of backup codes."""

        record = await self._secret_record(user.id)
        if record is not None and record.enabled:
            raise TwoFactorAlreadyEnabled(reason="two_factor_already_enabled")

        secret = pyotp.random_base32()
        encrypted = encrypt_totp_secret(secret, user_id=user.id, key=self._key)
        if record is None:
            self._session.add(TwoFactorSecret(user_id=user.id, secret_enc=encrypted, enabled=False))
        else:
            record.secret_enc = encrypted
            record.enabled_at = None
            record.last_used_at = None
            record.last_used_step = None
        await self._session.flush()

        codes = await self._replace_backup_codes(user.id)
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(
            name=user.email,
            issuer_name=self._config.totp_issuer,
        )
        logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(secret=secret, otpauth_url=otpauth_url, backup_codes=codes)

    async def enable(self, user: User, code: str, *, device: DeviceContext | None = None) -> None:
        record = await self._secret_record(user.id)
        if record is None:
            raise TwoFactorNotConfigured(reason="two_factor_not_setup")
        if record.enabled:
            raise TwoFactorAlreadyEnabled(reason="two_factor_already_enabled")
        if not await self._verify_totp(record, _clean_mfa_code(code)):
            raise InvalidSecondFactorCode(reason="enable_code_mismatch")

        now = self._now()
        record.enabled = True
        record.enabled_at = now
        record.last_used_at = now
        await self._session.flush()
        await record_audit_event(
            self._session,
            action=SecurityAction.TWO_FACTOR_ENABLED,
            result="success",
            severity=SecurityEventSeverity.MEDIUM,
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
        )
        logger.info("two_factor_enabled", user_id=user.id)

    async def disable(self, user: User, code: str, *, device: DeviceContext | None = None) -> None:
        record = await self._require_enabled(user)
        method = await self._verify_code(record, code)
        if method is None:
            raise InvalidSecondFactorCode(reason="disable_code_mismatch")

        await self._session.execute(
            delete(TwoFactorBackupCode)
            .where(TwoFactorBackupCode.user_id == user.id)
            .execution_options(synchronize_session=False)
        )
        await self._session.delete(record)
        await self._session.flush()
        await record_audit_event(
            self._session,
            action=SecurityAction.TWO_FACTOR_DISABLED,
            result="success",
            severity=SecurityEventSeverity.MEDIUM,
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            metadata={"method": method},
        )
        logger.info("two_factor_disabled", user_id=user.id, method=method)

    async def regenerate_backup_codes(
        self, user: User, code: str, *, device: DeviceContext | None = None
    ) -> list[str]:
        record = await self._require_enabled(user)
        # A backup code may not be spent to mint a new pool.
        if not await self._verify_totp(record, _clean_mfa_code(code)):
            raise InvalidSecondFactorCode(reason="regenerate_code_mismatch")
        codes = await self._replace_backup_codes(user.id)
        await record_audit_event(
            self._session,
            action=SecurityAction.BACKUP_CODES_REGENERATED,
            result="success",
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            metadata={"count": len(codes)},
        )
        return codes

    async def status(self, user: User) -> dict[str, Any]:
        record = await self._secret_record(user.id)
        remaining = await self._session.scalar(
            select(func.count())
            .select_from(TwoFactorBackupCode)
            .where(TwoFactorBackupCode.user_id == user.id, TwoFactorBackupCode.used_at.is_(None))
        )
        return {
            "is_enabled": bool(record is not None and record.enabled),
            "is_setup": record is not None,
            "last_used_at": ensure_aware(record.last_used_at) if record is not None else None,
            "backup_codes_remaining": int(remaining or 0) if record is not None else 0,
        }

    async def begin_login(self, user: User, *, remember_me: bool = False) -> tuple[str, int]:
        """Issue the handshake that stands in for a session until the code is checked."""

        ttl = self._config.handshake_token_ttl_seconds
        token, _, expires_at = create_handshake_token(
            subject=user.id,
            remember_me=remember_me,
            expires_in=ttl,
        )
        await TokenService(self._session).issue(
            user_id=user.id,
            purpose=UserTokenPurpose.SECOND_FACTOR,
            ttl_seconds=ttl,
            token=token,
            expires_at=expires_at,
        )
        logger.info("second_factor_handshake_issued", user_id=user.id)
        return token, ttl

    async def _reject_code(self, user: User, device: DeviceContext) -> NoReturn:
        outcome = await self._lockout.record_failure(user)
        await record_login_attempt(
            self._session,
            email=user.email,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            success=False,
            user_id=user.id,
            failure_reason="invalid_second_factor",
            lockout_triggered=outcome.lockout_triggered,
        )
        await record_audit_event(
            self._session,
            action=SecurityAction.LOGIN_SECOND_FACTOR,
            result="failure",
            severity=SecurityEventSeverity.MEDIUM,
            actor_user_id=user.id,
            target_user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"reason": "invalid_code", "lockout_triggered": outcome.lockout_triggered},
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
                metadata={"failed_attempts": outcome.failed_attempt_count, "factor": "second"},
            )
        await self._session.commit()

        if outcome.status.is_locked and outcome.status.lockout_expires_at is not None:
            if outcome.lockout_triggered and self._notifier is not None:
                await deliver_safely(
                    self._notifier.send_lockout_notice(
                        email=user.email,
                        lockout_expires_at=outcome.status.lockout_expires_at,
                        ip_address=device.ip_address,
                    ),
                    kind="lockout",
                )
            raise AccountLocked(outcome.status.lockout_expires_at, reason="second_factor_lockout")
        raise InvalidSecondFactorCode(reason="second_factor_code_mismatch")

    async def complete_login(
        self,
        handshake_token: str,
        code: str,
        device: DeviceContext,
    ) -> CompletedSecondFactor:
        """Check ``code`` against the handshake's owner and consume the handshake.

        A wrong code leaves the handshake live until it expires; a correct code
        consumes it with a compare-and-set so it finalizes at most one login.
        """

        try:
            claims = decode_handshake_token(handshake_token)
        except TokenDecodeError as exc:
            raise HandshakeExpiredOrReused(reason="handshake_expired" if exc.expired else "handshake_invalid") from exc

        tokens = TokenService(self._session)
        pending = await tokens.peek(token=handshake_token, purpose=UserTokenPurpose.SECOND_FACTOR)
        user_id = int(claims["sub"])
        if pending is None or pending.user_id != user_id:
            raise HandshakeExpiredOrReused(reason="handshake_consumed_or_unknown")

        user = await self._session.get(User, user_id, populate_existing=True)
        if user is None or not user.active:
            raise HandshakeExpiredOrReused(reason="handshake_owner_inactive")

        lock = await self._lockout.status(user)
        if lock.is_locked and lock.lockout_expires_at is not None:
            raise AccountLocked(lock.lockout_expires_at, reason="second_factor_while_locked")

        record = await self._secret_record(user.id)
        if record is None or not record.enabled:
            raise HandshakeExpiredOrReused(reason="two_factor_no_longer_enabled")

        method = await self._verify_code(record, code)
        if method is None:
            await self._reject_code(user, device)

        consumed = await tokens.consume(token=handshake_token, purpose=UserTokenPurpose.SECOND_FACTOR)
        if consumed is None:
            # Lost the race to another completion; give back the TOTP step or backup code claimed above.
            await self._session.rollback()
            raise HandshakeExpiredOrReused(reason="handshake_reused")

        await self._lockout.reset(user)
        record.last_used_at = self._now()
        await self._session.flush()
        logger.info("second_factor_verified", user_id=user.id, method=method)
        return CompletedSecondFactor(user=user, remember_me=bool(claims.get("rme")), method=method)


__all__ = ["CompletedSecondFactor", "TwoFactorGate", "TwoFactorSetup"]
