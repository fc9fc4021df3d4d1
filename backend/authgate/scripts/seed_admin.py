#!/usr/bin/env python3
"""Seed script to create or promote an administrator account."""

from __future__ import annotations

import argparse
import asyncio
from getpass import getpass
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.authgate.app.config import settings
from backend.authgate.app.security import hash_password
from backend.authgate.db.base import Base, configure_database, dispose_database
from backend.authgate.db.models import User, UserRole
from backend.authgate.db.session import session_scope


async def _ensure_schema(database_url: str) -> None:
    engine = configure_database(database_url, echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


async def ensure_admin(
    session: AsyncSession,
    *,
    email: str,
    username: str,
    password: str,
    name: Optional[str] = None,
) -> tuple[User, bool]:
    """Create the admin, or promote and re-key an existing account.

    Matches on email or username. Lockout counters are cleared so a locked
    operator can recover through this script. Returns ``(user, created)``.
    """

    normalized_email = email.strip().lower()
    user = await session.scalar(
        select(User).where(
            or_(
                func.lower(User.email) == normalized_email,
                func.lower(User.username) == username.strip().lower(),
            )
        )
    )

    created = user is None
    if user is None:
        user = User(email=normalized_email, username=username.strip())
        session.add(user)

    user.name = name if name is not None else user.name
    user.password_hash = hash_password(password)
    user.role = UserRole.ADMIN
    user.active = True
    user.email_verified = True
    user.failed_attempt_count = 0
    user.last_failed_attempt_at = None
    user.locked_at = None
    user.lockout_expires_at = None
    await session.flush()
    return user, created


async def _seed_admin(
    *,
    database_url: str,
    email: str,
    username: str,
    password: str,
    name: Optional[str],
) -> None:
    await _ensure_schema(database_url)

    try:
        async with session_scope() as session:
            user, created = await ensure_admin(
                session,
                email=email,
                username=username,
                password=password,
                name=name,
            )
    except IntegrityError as exc:  # pragma: no cover - interactive script guard
        raise SystemExit(f"Failed to create admin user: {exc}") from exc
    finally:
        await dispose_database()

    action = "created" if created else "promoted"
    print(f"Admin account {action}: {user.username} <{user.email}>")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed an admin user for the authgate database")
    parser.add_argument("--email", required=True, help="Admin e-mail address")
    parser.add_argument("--username", required=True, help="Admin username")
    parser.add_argument("--name", default=None, help="Display name for the admin user")
    parser.add_argument(
        "--password",
        default=None,
        help="Admin password. If omitted, an interactive prompt is shown.",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL to connect to (defaults to configured application URL).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    password = args.password or getpass("Admin password: ")
    if not password:
        raise SystemExit("Password cannot be empty")
    if len(password) < 8:
        raise SystemExit("Password must be at least 8 characters")

    asyncio.run(
        _seed_admin(
            database_url=args.database_url,
            email=args.email,
            username=args.username,
            password=password,
            name=args.name,
        )
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
