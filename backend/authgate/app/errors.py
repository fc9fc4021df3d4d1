"""Domain errors raised by the credential engine and their HTTP rendering.

Every error carries a caller-facing ``detail`` that is deliberately generic and
an internal ``reason`` that is only ever logged.  The JSON body rendered for a
client is always ``{"detail": ..., "code": ...}``.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base class for all credential lifecycle failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "AUTH_ERROR"
    default_detail: str = "Request could not be completed"

    def __init__(
        self,
        detail: str | None = None,
        *,
        reason: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.detail = detail or self.default_detail
        self.reason = reason or self.code.lower()
        self.headers: dict[str, str] = dict(headers or {})
        super().__init__(self.detail)

    def body(self) -> dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class InvalidCredentials(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_CREDENTIALS"
    default_detail = "Invalid credentials"


class AccountLocked(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCOUNT_LOCKED"
    default_detail = "Account temporarily locked due to repeated failed login attempts"

    def __init__(self, lockout_expires_at: datetime, *, reason: str | None = None) -> None:
        if lockout_expires_at.tzinfo is None:
            lockout_expires_at = lockout_expires_at.replace(tzinfo=timezone.utc)
        self.lockout_expires_at = lockout_expires_at
        remaining = (lockout_expires_at - datetime.now(timezone.utc)).total_seconds()
        self.retry_after = max(1, math.ceil(remaining))
        super().__init__(
            reason=reason or "account_locked",
            headers={"Retry-After": str(self.retry_after)},
        )

    def body(self) -> dict[str, Any]:
        payload = super().body()
        payload["lockoutExpiresAt"] = self.lockout_expires_at.isoformat()
        payload["retryAfter"] = self.retry_after
        payload["attemptsRemaining"] = 0
        return payload


class RateLimited(AuthError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    default_detail = "Too many requests. Try again later."

    def __init__(
        self,
        *,
        limit: int,
        reset_at: datetime,
        retry_after: int,
        reason: str | None = None,
    ) -> None:
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = max(1, retry_after)
        super().__init__(
            reason=reason or "rate_limited",
            headers={
                "Retry-After": str(self.retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(reset_at.timestamp())),
            },
        )

    def body(self) -> dict[str, Any]:
        payload = super().body()
        payload["retryAfter"] = self.retry_after
        return payload


class AddressBlocked(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "ADDRESS_BLOCKED"
    default_detail = "Access from this address is temporarily blocked"


class SecondFactorRequired(AuthError):
    """Raised once the first factor passed for an account with 2FA enabled."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "SECOND_FACTOR_REQUIRED"
    default_detail = "Second factor verification required"

    def __init__(self, handshake_token: str, expires_in: int) -> None:
        self.handshake_token = handshake_token
        self.expires_in = expires_in
        super().__init__(reason="second_factor_required")


class InvalidSecondFactorCode(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_SECOND_FACTOR_CODE"
    default_detail = "Invalid verification code"


class HandshakeExpiredOrReused(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "HANDSHAKE_EXPIRED_OR_REUSED"
    default_detail = "Verification session expired. Please sign in again."


class RefreshTokenInvalid(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "REFRESH_TOKEN_INVALID"
    default_detail = "Invalid refresh token"


class RefreshTokenExpired(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "REFRESH_TOKEN_EXPIRED"
    default_detail = "Refresh token expired"


class RefreshTokenRevoked(AuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "REFRESH_TOKEN_REVOKED"
    default_detail = "Refresh token has been revoked. Please sign in again."


class SessionNotFound(AuthError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "SESSION_NOT_FOUND"
    default_detail = "Session not found"


class Forbidden(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_detail = "Operation not permitted"


class EmailNotVerified(AuthError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "EMAIL_NOT_VERIFIED"
    default_detail = "Email address has not been verified"


class AccountExists(AuthError):
    status_code = status.HTTP_409_CONFLICT
    code = "ACCOUNT_EXISTS"
    default_detail = "An account with this email already exists"


class TwoFactorNotConfigured(AuthError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "TWO_FACTOR_NOT_CONFIGURED"
    default_detail = "Two-factor authentication has not been set up"


class TwoFactorAlreadyEnabled(AuthError):
    status_code = status.HTTP_409_CONFLICT
    code = "TWO_FACTOR_ALREADY_ENABLED"
    default_detail = "Two-factor authentication is already enabled"


class InvalidResetToken(AuthError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_RESET_TOKEN"
    default_detail = "Invalid or expired token"


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 500 or exc.status_code == 429 else logger.info
    log(
        "%s %s rejected: %s (%s)",
        request.method,
        request.url.path,
        exc.code,
        exc.reason,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.body(),
        headers=exc.headers or None,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the JSON renderer for every :class:`AuthError` subclass."""

    app.add_exception_handler(AuthError, auth_error_handler)  # type: ignore[arg-type]


__all__ = [
    "AccountExists",
    "AccountLocked",
    "AddressBlocked",
    "AuthError",
    "EmailNotVerified",
    "Forbidden",
    "HandshakeExpiredOrReused",
    "InvalidCredentials",
    "InvalidResetToken",
    "InvalidSecondFactorCode",
    "RateLimited",
    "RefreshTokenExpired",
    "RefreshTokenInvalid",
    "RefreshTokenRevoked",
    "SecondFactorRequired",
    "SessionNotFound",
    "TwoFactorAlreadyEnabled",
    "TwoFactorNotConfigured",
    "auth_error_handler",
    "setup_exception_handlers",
]
