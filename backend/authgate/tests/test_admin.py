"""Administrative security endpoint and threat detection tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status
from sqlalchemy import select

from backend.authgate.app.audit import SecurityAction
from backend.authgate.app.blocklist import AddressBlocklist
from backend.authgate.app.config import ThreatSettings
from backend.authgate.app.storage import MemoryCache
from backend.authgate.app.threats import ThreatMonitor
from backend.authgate.db.models import AuditEvent, LoginAttempt, UserRole

from .utils import bearer, create_user, login


async def _admin_headers(client, db_session) -> dict[str, str]:
    await create_user(db_session, email="root@example.com", username="root", role=UserRole.ADMIN)
    return bearer((await login(client, "root@example.com"))["accessToken"])


async def _lock_account(client, email: str) -> None:
    for _ in range(5):
        await client.post(
            "/auth/login",
            json={"email": email, "password": "wrong-secret"},
            headers={"X-Forwarded-For": "198.51.100.77"},
        )


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(client, db_session):
    await create_user(db_session, email="plain@example.com", username="plain")
    member = bearer((await login(client, "plain@example.com"))["accessToken"])

    anonymous = await client.get("/admin/security/metrics")
    forbidden = await client.get("/admin/security/metrics", headers=member)

    assert anonymous.status_code == status.HTTP_401_UNAUTHORIZED
    assert forbidden.status_code == status.HTTP_403_FORBIDDEN
    assert forbidden.json()["detail"] == "Insufficient role"


@pytest.mark.asyncio
async def test_locked_accounts_can_be_listed_and_unlocked(client, db_session, outbox):
    headers = await _admin_headers(client, db_session)
    await create_user(db_session, email="stuck@example.com", username="stuck")
    await _lock_account(client, "stuck@example.com")

    listing = await client.get("/admin/security/locked-accounts", headers=headers)
    assert listing.status_code == status.HTTP_200_OK
    assert listing.json()["count"] == 1
    assert listing.json()["data"][0]["email"] == "stuck@example.com"
    assert listing.json()["data"][0]["failedAttemptCount"] == 5

    unlocked = await client.post(
        "/admin/security/unlock-account",
        json={"email": "stuck@example.com", "reason": "Verified by phone"},
        headers=headers,
    )
    assert unlocked.json() == {"success": True, "message": "Account unlocked successfully"}
    assert outbox[-1] == {"type": "unlock", "email": "stuck@example.com"}

    again = await client.post(
        "/admin/security/unlock-account", json={"email": "stuck@example.com"}, headers=headers
    )
    assert again.json() == {"success": False, "message": "Account is not locked"}

    await login(client, "stuck@example.com")
    assert (await client.get("/admin/security/locked-accounts", headers=headers)).json()["count"] == 0


@pytest.mark.asyncio
async def test_address_block_lifecycle(client, db_session):
    headers = await _admin_headers(client, db_session)

    own = await client.post(
        "/admin/security/block-ip",
        json={"ipAddress": "127.0.0.1", "reason": "oops"},
        headers=headers,
    )
    assert own.status_code == status.HTTP_400_BAD_REQUEST

    blocked = await client.post(
        "/admin/security/block-ip",
        json={"ipAddress": "203.0.113.50", "reason": "Scraping", "durationSeconds": 3600},
        headers=headers,
    )
    assert blocked.status_code == status.HTTP_200_OK
    assert blocked.json()["reason"] == "Scraping"

    state = (await client.get("/admin/security/ip-status/203.0.113.50", headers=headers)).json()
    assert state["isBlocked"] is True
    assert state["status"] == "BLOCKED"
    assert state["reason"] == "Admin block: Scraping"

    rejected = await client.post(
        "/auth/lockout/check",
        json={"email": "someone@example.com"},
        headers={"X-Forwarded-For": "203.0.113.50"},
    )
    assert rejected.status_code == status.HTTP_403_FORBIDDEN

    removed = await client.delete("/admin/security/blocked-ips/203.0.113.50", headers=headers)
    assert removed.status_code == status.HTTP_200_OK
    missing = await client.delete("/admin/security/blocked-ips/203.0.113.50", headers=headers)
    assert missing.status_code == status.HTTP_404_NOT_FOUND

    state = (await client.get("/admin/security/ip-status/203.0.113.50", headers=headers)).json()
    assert state == {"ipAddress": "203.0.113.50", "isBlocked": False, "status": "ALLOWED"}


@pytest.mark.asyncio
async def test_events_can_be_filtered(client, db_session):
    headers = await _admin_headers(client, db_session)
    await create_user(db_session, email="noisy@example.com", username="noisy")
    await client.post("/auth/login", json={"email": "noisy@example.com", "password": "wrong-secret"})
    await login(client, "noisy@example.com")

    logins = await client.get(
        "/admin/security/events", params={"action": SecurityAction.LOGIN}, headers=headers
    )
    assert logins.status_code == status.HTTP_200_OK
    data = logins.json()["data"]
    assert data["pagination"]["total"] == len(data["events"])
    assert {event["action"] for event in data["events"]} == {SecurityAction.LOGIN}
    assert {event["result"] for event in data["events"]} == {"success", "failure"}

    page = (
        await client.get("/admin/security/events", params={"limit": 1}, headers=headers)
    ).json()["data"]
    assert len(page["events"]) == 1
    assert page["pagination"]["total"] > 1

    invalid = await client.get("/admin/security/events", params={"severity": "extreme"}, headers=headers)
    assert invalid.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_statistics_dashboard_and_config(client, db_session):
    headers = await _admin_headers(client, db_session)
    await create_user(db_session, email="stat@example.com", username="stat")
    await _lock_account(client, "stat@example.com")

    stats = (await client.get("/admin/security/lockout-stats", headers=headers)).json()["data"]
    assert stats["timeframe"] == "day"
    assert stats["failedAttempts"] == 5
    assert stats["lockouts"] == 1
    assert stats["uniqueAddresses"] == 1

    metrics = (
        await client.get("/admin/security/metrics", params={"timeframe": "week"}, headers=headers)
    ).json()["data"]
    assert metrics["failedLogins"] == 5
    assert metrics["lockedAccounts"] == 1
    assert metrics["blockedAddresses"] == 0

    dashboard = (await client.get("/admin/security/dashboard", headers=headers)).json()["data"]
    assert dashboard["summary"]["activeLockedAccounts"] == 1
    assert dashboard["summary"]["lockoutsToday"] == 1

    config = (await client.get("/admin/security/config", headers=headers)).json()["data"]
    assert config["lockout"]["maxAttempts"] == 5
    assert config["rateLimit"]["login"]["limit"] == 1_000

    bad = await client.get("/admin/security/metrics", params={"timeframe": "year"}, headers=headers)
    assert bad.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


@pytest.mark.asyncio
async def test_analyze_ip_flags_suspicious_agents(client, db_session):
    headers = await _admin_headers(client, db_session)

    response = await client.post(
        "/admin/security/analyze-ip",
        json={"ipAddress": "192.0.2.10", "userAgent": "curl/8.4.0"},
        headers=headers,
    )

    assert response.status_code == status.HTTP_200_OK
    analysis = response.json()["analysis"]
    assert analysis["riskScore"] == 25
    assert analysis["isSuspicious"] is False
    assert analysis["reasons"] == ["Suspicious user agent detected"]


async def _seed_failures(session, address: str, count: int) -> None:
    now = datetime.now(timezone.utc)
    for index in range(count):
        session.add(
            LoginAttempt(
                email=f"user{index}@example.com",
                ip_address=address,
                success=False,
                failure_reason="invalid_password",
                created_at=now - timedelta(seconds=index),
            )
        )
    await session.flush()


@pytest.mark.asyncio
async def test_brute_force_blocks_address_at_threshold(db_session):
    blocklist = AddressBlocklist(cache=MemoryCache(), default_duration_seconds=600)
    monitor = ThreatMonitor(
        db_session,
        blocklist=blocklist,
        config=ThreatSettings(brute_force_threshold=4, brute_force_window_seconds=300),
    )

    await _seed_failures(db_session, "198.51.100.9", 3)
    assert await monitor.evaluate_failure("198.51.100.9") is False
    assert await blocklist.is_blocked("198.51.100.9") is False

    await _seed_failures(db_session, "198.51.100.9", 1)
    assert await monitor.evaluate_failure("198.51.100.9", user_agent="bot/1.0") is True
    assert (await blocklist.get("198.51.100.9")).reason == "brute_force"

    events = (
        await db_session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.BRUTE_FORCE))
    ).scalars().all()
    assert len(events) == 1
    assert events[0].metadata_json["threshold"] == 4

    assert await monitor.evaluate_failure("198.51.100.9") is True
    assert len(
        (
            await db_session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.BRUTE_FORCE))
        ).scalars().all()
    ) == 1


@pytest.mark.asyncio
async def test_analysis_scores_failures_and_agent(db_session):
    blocklist = AddressBlocklist(cache=MemoryCache(), default_duration_seconds=600)
    monitor = ThreatMonitor(db_session, blocklist=blocklist, config=ThreatSettings())
    await _seed_failures(db_session, "192.0.2.200", 11)

    flagged = await monitor.analyze("192.0.2.200", "python-requests/2.31")

    assert flagged.risk_score == 65
    assert flagged.is_suspicious is True
    assert flagged.blocked is False
    assert "Multiple failed login attempts" in flagged.reasons

    escalated = await monitor.analyze("192.0.2.200", "python-requests/2.31")
    assert escalated.risk_score == 65

    strict = ThreatMonitor(db_session, blocklist=blocklist, config=ThreatSettings(block_score=60))
    blocked = await strict.analyze("192.0.2.200", "python-requests/2.31")
    assert blocked.blocked is True
    assert await blocklist.is_blocked("192.0.2.200") is True
