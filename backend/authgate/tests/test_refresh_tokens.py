"""Refresh token issuance, rotation and reuse detection tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status
from sqlalchemy import select, update

from backend.authgate.app.audit import SecurityAction
from backend.authgate.app.config import MaintenanceSettings
from backend.authgate.app.maintenance import sweep_expired_state
from backend.authgate.app.security import hash_token
from backend.authgate.db.models import AuditEvent, RefreshToken

from .utils import bearer, create_user, login


@pytest.mark.asyncio
async def test_remember_me_login_returns_refresh_token(client, db_session):
    await create_user(db_session, email="keep@example.com", username="keep")

    body = await login(client, "keep@example.com", remember_me=True)

    assert body["rememberMe"] is True
    assert body["refreshToken"]
    expires_at = datetime.fromisoformat(body["refreshExpiresAt"].replace("Z", "+00:00"))
    assert expires_at - datetime.now(timezone.utc) > timedelta(days=29)


@pytest.mark.asyncio
async def test_refresh_mints_new_access_token_without_rotating(client, db_session):
    await create_user(db_session, email="renew@example.com", username="renew")
    initial = await login(client, "renew@example.com", remember_me=True)

    first = await client.post("/auth/refresh", json={"refreshToken": initial["refreshToken"]})
    second = await client.post("/auth/refresh", json={"refreshToken": initial["refreshToken"]})

    assert first.status_code == second.status_code == status.HTTP_200_OK
    renewed = first.json()["accessToken"]
    assert renewed != initial["accessToken"]
    assert (await client.get("/auth/me", headers=bearer(renewed))).status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_rotation_replaces_refresh_token(client, db_session, session_factory):
    await create_user(db_session, email="rotate@example.com", username="rotate")
    initial = await login(client, "rotate@example.com", remember_me=True)

    response = await client.post("/auth/refresh/rotate", json={"refreshToken": initial["refreshToken"]})

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["refreshToken"] != initial["refreshToken"]
    assert body["rememberMe"] is True

    async with session_factory() as session:
        old = await session.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(initial["refreshToken"]))
        )
        new = await session.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(body["refreshToken"]))
        )
        assert old.revoked_reason == "rotated"
        assert new.parent_id == old.id
        assert new.lineage_id == old.lineage_id
        assert new.revoked_at is None


@pytest.mark.asyncio
async def test_reused_refresh_token_revokes_whole_lineage(client, db_session, session_factory, outbox):
    await create_user(db_session, email="theft@example.com", username="theft")
    initial = await login(client, "theft@example.com", remember_me=True)
    rotated = (
        await client.post("/auth/refresh/rotate", json={"refreshToken": initial["refreshToken"]})
    ).json()

    replay = await client.post("/auth/refresh/rotate", json={"refreshToken": initial["refreshToken"]})

    assert replay.status_code == status.HTTP_401_UNAUTHORIZED
    assert replay.json()["code"] == "REFRESH_TOKEN_REVOKED"

    successor = await client.post("/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
    assert successor.status_code == status.HTTP_401_UNAUTHORIZED

    for token in (initial["accessToken"], rotated["accessToken"]):
        assert (await client.get("/auth/me", headers=bearer(token))).status_code == status.HTTP_401_UNAUTHORIZED

    assert "refresh_token_reuse" in [item["type"] for item in outbox]
    async with session_factory() as session:
        reasons = (await session.execute(select(RefreshToken.revoked_reason))).scalars().all()
        assert sorted(reasons) == ["reuse_detected", "rotated"]
        reuse_events = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.REFRESH_REUSE))
        ).scalars().all()
        assert len(reuse_events) >= 1
        assert reuse_events[0].severity.value == "high"


@pytest.mark.asyncio
async def test_unknown_refresh_token_is_invalid(client):
    response = await client.post("/auth/refresh", json={"refreshToken": "made-up-token"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["code"] == "REFRESH_TOKEN_INVALID"


@pytest.mark.asyncio
async def test_expired_refresh_token_is_revoked_on_use(client, db_session, session_factory):
    await create_user(db_session, email="old@example.com", username="old")
    initial = await login(client, "old@example.com", remember_me=True)

    async with session_factory() as session:
        await session.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(initial["refreshToken"]))
            .values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=5))
        )
        await session.commit()

    first = await client.post("/auth/refresh", json={"refreshToken": initial["refreshToken"]})
    second = await client.post("/auth/refresh", json={"refreshToken": initial["refreshToken"]})

    assert first.json()["code"] == second.json()["code"] == "REFRESH_TOKEN_EXPIRED"
    async with session_factory() as session:
        record = await session.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(initial["refreshToken"]))
        )
        assert record.revoked_reason == "expired"


@pytest.mark.asyncio
async def test_list_and_revoke_refresh_tokens(client, db_session):
    await create_user(db_session, email="devices@example.com", username="devices")
    first = await login(client, "devices@example.com", remember_me=True)
    await login(client, "devices@example.com", remember_me=True)
    headers = bearer(first["accessToken"])

    listing = await client.get("/auth/refresh-tokens", headers=headers)
    assert listing.status_code == status.HTTP_200_OK
    body = listing.json()
    assert body["stats"]["totalActive"] == 2
    assert body["stats"]["rememberMe"] == 2
    token_id = body["tokens"][0]["id"]

    revoked = await client.delete(f"/auth/refresh-tokens/{token_id}", headers=headers)
    assert revoked.status_code == status.HTTP_200_OK

    again = await client.delete(f"/auth/refresh-tokens/{token_id}", headers=headers)
    assert again.status_code == status.HTTP_404_NOT_FOUND

    missing = await client.delete("/auth/refresh-tokens/not-a-token", headers=headers)
    assert missing.status_code == status.HTTP_404_NOT_FOUND

    after = (await client.get("/auth/refresh-tokens", headers=headers)).json()
    assert after["stats"]["totalActive"] == 1


@pytest.mark.asyncio
async def test_cannot_revoke_another_users_refresh_token(client, db_session):
    await create_user(db_session, email="victim@example.com", username="victim")
    await create_user(db_session, email="other@example.com", username="other")
    victim = await login(client, "victim@example.com", remember_me=True)
    other = await login(client, "other@example.com")

    token_id = (await client.get("/auth/refresh-tokens", headers=bearer(victim["accessToken"]))).json()[
        "tokens"
    ][0]["id"]
    response = await client.delete(f"/auth/refresh-tokens/{token_id}", headers=bearer(other["accessToken"]))

    assert response.status_code == status.HTTP_403_FORBIDDEN
    renewed = await client.post("/auth/refresh", json={"refreshToken": victim["refreshToken"]})
    assert renewed.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_revoke_all_can_spare_one_token(client, db_session):
    await create_user(db_session, email="spare@example.com", username="spare")
    logins = [await login(client, "spare@example.com", remember_me=True) for _ in range(3)]
    keep = logins[0]

    response = await client.request(
        "DELETE",
        "/auth/refresh-tokens",
        json={"exceptToken": keep["refreshToken"]},
        headers=bearer(keep["accessToken"]),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["revoked"] == 2
    kept = await client.post("/auth/refresh", json={"refreshToken": keep["refreshToken"]})
    assert kept.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_logout_revokes_presented_refresh_token(client, db_session):
    await create_user(db_session, email="leave@example.com", username="leave")
    body = await login(client, "leave@example.com", remember_me=True)

    response = await client.post(
        "/auth/logout",
        json={"refreshToken": body["refreshToken"]},
        headers=bearer(body["accessToken"]),
    )
    assert response.status_code == status.HTTP_200_OK

    renewed = await client.post("/auth/refresh", json={"refreshToken": body["refreshToken"]})
    assert renewed.status_code == status.HTTP_401_UNAUTHORIZED


@pytest.mark.asyncio
async def test_rotated_token_is_still_detected_as_reuse_after_sweep(client, db_session, session_factory):
    await create_user(db_session, email="aged@example.com", username="aged")
    initial = await login(client, "aged@example.com", remember_me=True)
    rotated = (
        await client.post("/auth/refresh/rotate", json={"refreshToken": initial["refreshToken"]})
    ).json()

    async with session_factory() as session:
        await session.execute(
            update(RefreshToken)
            .where(RefreshToken.token_hash == hash_token(initial["refreshToken"]))
            .values(revoked_at=datetime.now(timezone.utc) - timedelta(days=8))
        )
        await session.commit()
    async with session_factory() as session:
        report = await sweep_expired_state(session, config=MaintenanceSettings())
        await session.commit()
    assert report.refresh_tokens == 0

    replay = await client.post("/auth/refresh/rotate", json={"refreshToken": initial["refreshToken"]})

    assert replay.status_code == status.HTTP_401_UNAUTHORIZED
    assert replay.json()["code"] == "REFRESH_TOKEN_REVOKED"
    successor = await client.post("/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
    assert successor.status_code == status.HTTP_401_UNAUTHORIZED
    async with session_factory() as session:
        reasons = (await session.execute(select(RefreshToken.revoked_reason))).scalars().all()
        assert sorted(reasons) == ["reuse_detected", "rotated"]


@pytest.mark.asyncio
async def test_concurrent_rotation_lets_exactly_one_caller_win(client, db_session):
    await create_user(db_session, email="race@example.com", username="race")
    initial = await login(client, "race@example.com", remember_me=True)
    payload = {"refreshToken": initial["refreshToken"]}

    responses = await asyncio.gather(
        client.post("/auth/refresh/rotate", json=payload),
        client.post("/auth/refresh/rotate", json=payload),
    )

    codes = sorted(response.status_code for response in responses)
    assert codes == [status.HTTP_200_OK, status.HTTP_401_UNAUTHORIZED]
    loser = next(response for response in responses if response.status_code == status.HTTP_401_UNAUTHORIZED)
    assert loser.json()["code"] == "REFRESH_TOKEN_REVOKED"
