from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status

from backend.authgate.db.models import UserRole
from backend.authgate.scripts.seed_admin import ensure_admin

from .utils import bearer, create_user


@pytest.mark.asyncio
async def test_ensure_admin_creates_account(db_session, client):
    user, created = await ensure_admin(
        db_session,
        email="Ops@Example.com",
        username="ops",
        password="operator-secret",
        name="Operations",
    )
    await db_session.commit()

    assert created is True
    assert user.email == "ops@example.com"
    assert user.role == UserRole.ADMIN

    response = await client.post("/auth/login", json={"email": "ops@example.com", "password": "operator-secret"})
    assert response.status_code == status.HTTP_200_OK
    config = await client.get("/admin/security/config", headers=bearer(response.json()["accessToken"]))
    assert config.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_ensure_admin_promotes_and_unlocks_existing_member(db_session):
    member = await create_user(db_session, email="lead@example.com", username="lead", name="Team Lead")
    member.failed_attempt_count = 5
    member.locked_at = datetime.now(timezone.utc)
    member.lockout_expires_at = datetime.now(timezone.utc) + timedelta(minutes=15)
    await db_session.commit()

    user, created = await ensure_admin(
        db_session, email="other@example.com", username="LEAD", password="new-operator-secret"
    )
    await db_session.commit()

    assert created is False
    assert user.id == member.id
    assert user.role == UserRole.ADMIN
    assert user.name == "Team Lead"
    assert user.failed_attempt_count == 0
    assert user.lockout_expires_at is None
