from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from backend.authgate.app.audit import SecurityAction
from backend.authgate.app.blocklist import AddressBlocklist
from backend.authgate.app.config import AuthSettings, ThreatSettings
from backend.authgate.app.devices import DeviceContext
from backend.authgate.app.errors import AddressBlocked, EmailNotVerified, InvalidCredentials, RateLimited
from backend.authgate.app.rate_limit import RateLimitClass, RateLimiter, RateLimitRule
from backend.authgate.app.storage import MemoryCache
from backend.authgate.app.threats import ThreatMonitor
from backend.authgate.app.verifier import CredentialVerifier
from backend.authgate.db.models import AuditEvent, LoginAttempt

from .utils import DEFAULT_PASSWORD, create_user

DEVICE = DeviceContext(ip_address="198.51.100.20", user_agent="pytest")


def _verifier(
    session, *, login_limit: int = 100, threats: ThreatSettings | None = None, **config
) -> tuple[CredentialVerifier, AddressBlocklist]:
    cache = MemoryCache()
    blocklist = AddressBlocklist(cache=cache, default_duration_seconds=600)
    limiter = RateLimiter(
        cache=cache,
        rules={RateLimitClass.LOGIN: RateLimitRule(limit=login_limit, window_seconds=60)},
    )
    verifier = CredentialVerifier(
        session,
        rate_limiter=limiter,
        blocklist=blocklist,
        threats=ThreatMonitor(session, blocklist=blocklist, config=threats or ThreatSettings()),
        config=AuthSettings(**config),
    )
    return verifier, blocklist


@pytest.mark.asyncio
async def test_correct_secret_returns_account_and_logs_success(db_session):
    user = await create_user(db_session, email="fine@example.com", username="fine")
    verifier, _ = _verifier(db_session)

    verified = await verifier.verify(" FINE@example.com ", DEFAULT_PASSWORD, DEVICE)
    await db_session.commit()

    assert verified.id == user.id
    attempts = (await db_session.execute(select(LoginAttempt))).scalars().all()
    assert [(attempt.success, attempt.email) for attempt in attempts] == [(True, "fine@example.com")]


@pytest.mark.asyncio
async def test_unverified_email_is_only_revealed_to_correct_secret(db_session):
    await create_user(db_session, email="pending@example.com", username="pending", email_verified=False)
    verifier, _ = _verifier(db_session, require_verified_email=True)

    with pytest.raises(InvalidCredentials):
        await verifier.verify("pending@example.com", "wrong-secret", DEVICE)
    with pytest.raises(EmailNotVerified):
        await verifier.verify("pending@example.com", DEFAULT_PASSWORD, DEVICE)

    reasons = (await db_session.execute(select(LoginAttempt.failure_reason))).scalars().all()
    assert reasons == ["invalid_password", "email_not_verified"]


@pytest.mark.asyncio
async def test_unverified_email_is_allowed_by_default(db_session):
    await create_user(db_session, email="casual@example.com", username="casual", email_verified=False)
    verifier, _ = _verifier(db_session)

    assert (await verifier.verify("casual@example.com", DEFAULT_PASSWORD, DEVICE)).email == "casual@example.com"


@pytest.mark.asyncio
async def test_blocked_address_is_rejected_before_lookup(db_session):
    await create_user(db_session, email="walled@example.com", username="walled")
    verifier, blocklist = _verifier(db_session)
    await blocklist.block(DEVICE.ip_address, reason="manual")

    with pytest.raises(AddressBlocked):
        await verifier.verify("walled@example.com", DEFAULT_PASSWORD, DEVICE)

    events = (await db_session.execute(select(AuditEvent.action))).scalars().all()
    assert events == [SecurityAction.BLOCKED_REQUEST]
    assert (await db_session.execute(select(LoginAttempt))).scalars().all() == []


@pytest.mark.asyncio
async def test_login_budget_applies_even_to_correct_secret(db_session):
    await create_user(db_session, email="busy@example.com", username="busy")
    verifier, _ = _verifier(db_session, login_limit=1)

    await verifier.verify("busy@example.com", DEFAULT_PASSWORD, DEVICE)

    with pytest.raises(RateLimited):
        await verifier.verify("busy@example.com", DEFAULT_PASSWORD, DEVICE)


async def _seed_recent_logins(session, address: str, count: int) -> None:
    now = datetime.now(timezone.utc)
    session.add_all(
        LoginAttempt(email=f"visitor{index}@example.com", ip_address=address, success=True, created_at=now)
        for index in range(count)
    )
    await session.commit()


@pytest.mark.asyncio
async def test_successful_login_flags_high_frequency_scripted_client(db_session):
    await create_user(db_session, email="scripted@example.com", username="scripted")
    verifier, blocklist = _verifier(db_session)
    scripted = DeviceContext(ip_address="198.51.100.30", user_agent="curl/8.4.0")
    await _seed_recent_logins(db_session, scripted.ip_address, 50)

    verified = await verifier.verify("scripted@example.com", DEFAULT_PASSWORD, scripted)
    await db_session.commit()

    assert verified.email == "scripted@example.com"
    event = await db_session.scalar(
        select(AuditEvent).where(AuditEvent.action == SecurityAction.SUSPICIOUS_ACTIVITY)
    )
    assert event is not None
    assert event.result == "flagged"
    assert event.ip_address == scripted.ip_address
    assert event.metadata_json["risk_score"] == 55
    assert await blocklist.is_blocked(scripted.ip_address) is False


@pytest.mark.asyncio
async def test_high_risk_score_blocks_later_logins_from_address(db_session):
    await create_user(db_session, email="farm@example.com", username="farm")
    verifier, blocklist = _verifier(db_session, threats=ThreatSettings(block_score=55))
    scripted = DeviceContext(ip_address="198.51.100.31", user_agent="curl/8.4.0")
    await _seed_recent_logins(db_session, scripted.ip_address, 50)

    await verifier.verify("farm@example.com", DEFAULT_PASSWORD, scripted)
    await db_session.commit()

    assert (await blocklist.get(scripted.ip_address)).reason == "suspicious_activity"
    with pytest.raises(AddressBlocked):
        await verifier.verify("farm@example.com", DEFAULT_PASSWORD, scripted)


@pytest.mark.asyncio
async def test_ordinary_login_is_not_flagged(db_session):
    await create_user(db_session, email="normal@example.com", username="normal")
    verifier, _ = _verifier(db_session)

    await verifier.verify("normal@example.com", DEFAULT_PASSWORD, DEVICE)
    await db_session.commit()

    actions = (await db_session.execute(select(AuditEvent.action))).scalars().all()
    assert SecurityAction.SUSPICIOUS_ACTIVITY not in actions
