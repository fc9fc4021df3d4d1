"""Testing utilities for authgate API tests."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pyotp
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from backend.authgate.app.config import RateLimitSettings
from backend.authgate.app.security import hash_password
from backend.authgate.db.models import User, UserRole

DEFAULT_PASSWORD = "correct-horse-battery"


def generous_rate_limits(**overrides: int) -> RateLimitSettings:
    values: dict[str, int] = {
        "global_limit": 1_000,
        "auth_limit": 1_000,
        "login_limit": 1_000,
        "register_limit": 1_000,
        "password_reset_limit": 1_000,
        "sensitive_limit": 1_000,
    }
    values.update(overrides)
    return RateLimitSettings(**values)


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    username: str | None = None,
    password: str = DEFAULT_PASSWORD,
    role: UserRole = UserRole.MEMBER,
    name: str | None = None,
    active: bool = True,
    email_verified: bool = True,
) -> User:
    """Create a user for integration tests."""

    user = User(
        email=email,
        username=username or email.split("@", 1)[0],
        name=name,
        password_hash=hash_password(password),
        role=role,
        active=active,
        email_verified=email_verified,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def login(
    client: AsyncClient,
    email: str,
    password: str = DEFAULT_PASSWORD,
    *,
    remember_me: bool = False,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    response = await client.post(
        "/auth/login",
        json={"email": email, "password": password, "rememberMe": remember_me},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return response.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def enable_two_factor(client: AsyncClient, access_token: str) -> tuple[pyotp.TOTP, list[str]]:
    """Enrol and enable TOTP for the token's owner; returns the generator and backup codes."""

    setup = await client.post("/auth/2fa/setup", headers=bearer(access_token))
    assert setup.status_code == 200, setup.text
    body = setup.json()
    totp = pyotp.TOTP(body["secret"])
    enabled = await client.post(
        "/auth/2fa/enable",
        json={"code": totp.now()},
        headers=bearer(access_token),
    )
    assert enabled.status_code == 200, enabled.text
    return totp, body["backupCodes"]


def next_code(totp: pyotp.TOTP, steps: int = 1) -> str:
    """A code for a later time step; the step used to enable is already spent."""

    return totp.at(datetime.now(timezone.utc), counter_offset=steps)
