"""Secret hashing and signed token helpers."""
from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Final

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from jwt import InvalidTokenError

from .config import settings

_PASSWORD_HASHER: Final[PasswordHasher] = PasswordHasher(
    time_cost=settings.auth.password_hash_time_cost,
    memory_cost=settings.auth.password_hash_memory_cost,
)

# Verified against when the account does not exist so both paths cost the same.
_DUMMY_HASH: Final[str] = _PASSWORD_HASHER.hash(secrets.token_urlsafe(16))

ACCESS_TOKEN_TYPE: Final[str] = "access"
HANDSHAKE_TOKEN_TYPE: Final[str] = "second_factor"
JWT_ALGORITHM: Final[str] = "HS256"


class TokenDecodeError(Exception):
    """Raised when a signed token cannot be decoded or is of the wrong type."""

    def __init__(self, message: str, *, expired: bool = False) -> None:
        super().__init__(message)
        self.expired = expired


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""

    return _PASSWORD_HASHER.hash(password)


def verify_password(stored_hash: str, candidate: str) -> bool:
    """Verify a plaintext secret against the stored hash in constant time."""

    try:
        return _PASSWORD_HASHER.verify(stored_hash, candidate)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


def burn_password_check(candidate: str) -> None:
    """Spend the same hashing effort as a real verification and discard the result."""

    verify_password(_DUMMY_HASH, candidate)


def hash_token(token: str) -> str:
    """Hash opaque tokens before persistence to the database."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_opaque_token(nbytes: int = 48) -> str:
    return secrets.token_urlsafe(nbytes)


@dataclass(frozen=True, slots=True)
class AccessTokenClaims:
    """Validated access token payload."""

    subject: int
    session_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


def create_access_token(
    *,
    subject: int,
    session_id: str,
    expires_in: int | None = None,
    now: datetime | None = None,
) -> tuple[str, datetime]:
    """Issue an access token bound to the session row ``session_id``."""

    issued = now or datetime.now(timezone.utc)
    ttl = expires_in or settings.auth.access_token_ttl_seconds
    exp = issued + timedelta(seconds=int(ttl))
    payload: dict[str, Any] = {
        "sub": str(subject),
        "sid": session_id,
        "type": ACCESS_TOKEN_TYPE,
        "iat": int(issued.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    token = jwt.encode(payload, settings.auth.jwt_secret, algorithm=JWT_ALGORITHM)
    return token, exp


def decode_access_token(token: str) -> AccessTokenClaims:
    try:
        payload = jwt.decode(
            token,
            settings.auth.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "sid", "exp", "type"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenDecodeError("Token expired", expired=True) from exc
    except InvalidTokenError as exc:
        raise TokenDecodeError("Invalid token") from exc

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise TokenDecodeError("Invalid token type")
    subject = str(payload.get("sub", "")).strip()
    if not subject.isdigit():
        raise TokenDecodeError("Token subject is invalid")
    session_id = payload.get("sid")
    if not isinstance(session_id, str) or not session_id:
        raise TokenDecodeError("Token session is missing")

    return AccessTokenClaims(
        subject=int(subject),
        session_id=session_id,
        issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        token_id=str(payload.get("jti", "")),
    )


def create_handshake_token(
    *,
    subject: int,
    remember_me: bool,
    expires_in: int,
    now: datetime | None = None,
) -> tuple[str, str, datetime]:
    """Issue a signed second-factor handshake token.

    Returns the encoded token, its ``jti`` and its expiry.
    """

    issued = now or datetime.now(timezone.utc)
    exp = issued + timedelta(seconds=int(expires_in))
    token_id = uuid.uuid4().hex
    payload = {
        "sub": str(subject),
        "type": HANDSHAKE_TOKEN_TYPE,
        "iss": settings.auth.handshake_issuer,
        "iat": int(issued.timestamp()),
        "exp": int(exp.timestamp()),
        "jti": token_id,
        "rme": bool(remember_me),
    }
    token = jwt.encode(payload, settings.auth.jwt_secret, algorithm=JWT_ALGORITHM)
    return token, token_id, exp


def decode_handshake_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            settings.auth.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            issuer=settings.auth.handshake_issuer,
            options={"require": ["sub", "exp", "jti", "iss"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenDecodeError("Handshake expired", expired=True) from exc
    except InvalidTokenError as exc:
        raise TokenDecodeError("Invalid handshake") from exc

    if payload.get("type") != HANDSHAKE_TOKEN_TYPE:
        raise TokenDecodeError("Invalid token type")
    if not str(payload.get("sub", "")).isdigit():
        raise TokenDecodeError("Token subject is invalid")
    return payload


__all__ = [
    "ACCESS_TOKEN_TYPE",
    "AccessTokenClaims",
    "HANDSHAKE_TOKEN_TYPE",
    "TokenDecodeError",
    "burn_password_check",
    "create_access_token",
    "create_handshake_token",
    "decode_access_token",
    "decode_handshake_token",
    "generate_opaque_token",
    "hash_password",
    "hash_token",
    "verify_password",
]
