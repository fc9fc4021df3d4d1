"""Signed token and secret hashing tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from backend.authgate.app.config import settings
from backend.authgate.app.security import (
    JWT_ALGORITHM,
    TokenDecodeError,
    create_access_token,
    create_handshake_token,
    decode_access_token,
    decode_handshake_token,
    hash_password,
    hash_token,
    verify_password,
)


def test_password_hash_round_trip():
    stored = hash_password("s3cret-value")

    assert stored.startswith("$argon2id$")
    assert verify_password(stored, "s3cret-value") is True
    assert verify_password(stored, "other-value") is False
    assert verify_password("not-a-hash", "s3cret-value") is False


def test_token_hash_is_stable_and_opaque():
    assert hash_token("abc") == hash_token("abc")
    assert hash_token("abc") != hash_token("abd")
    assert len(hash_token("abc")) == 64


def test_access_token_carries_session_binding():
    token, expires_at = create_access_token(subject=12, session_id="session-1", expires_in=120)

    claims = decode_access_token(token)

    assert claims.subject == 12
    assert claims.session_id == "session-1"
    assert claims.expires_at == expires_at.replace(microsecond=0)
    assert claims.token_id


def test_expired_access_token_is_flagged():
    token, _ = create_access_token(
        subject=1,
        session_id="session-1",
        expires_in=60,
        now=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    with pytest.raises(TokenDecodeError) as excinfo:
        decode_access_token(token)
    assert excinfo.value.expired is True


def test_token_types_are_not_interchangeable():
    handshake, _, _ = create_handshake_token(subject=3, remember_me=True, expires_in=300)
    access, _ = create_access_token(subject=3, session_id="session-3")

    with pytest.raises(TokenDecodeError):
        decode_access_token(handshake)
    with pytest.raises(TokenDecodeError):
        decode_handshake_token(access)

    claims = decode_handshake_token(handshake)
    assert claims["sub"] == "3"
    assert claims["rme"] is True


def test_tokens_signed_with_another_key_are_rejected():
    forged = jwt.encode(
        {"sub": "1", "sid": "s", "type": "access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "a-different-secret-key",
        algorithm=JWT_ALGORITHM,
    )
    missing_session = jwt.encode(
        {"sub": "1", "type": "access", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        settings.auth.jwt_secret,
        algorithm=JWT_ALGORITHM,
    )

    for token in (forged, missing_session, "not.a.jwt"):
        with pytest.raises(TokenDecodeError) as excinfo:
            decode_access_token(token)
        assert excinfo.value.expired is False
