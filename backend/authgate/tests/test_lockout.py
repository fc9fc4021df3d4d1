"""Account lockout tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status
from sqlalchemy import select

from backend.authgate.app.audit import SecurityAction
from backend.authgate.app.config import LockoutSettings
from backend.authgate.app.lockout import LockoutTracker, ensure_aware
from backend.authgate.db.models import AuditEvent, LoginAttempt, User

from .utils import DEFAULT_PASSWORD, create_user


class FrozenClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def __call__(self) -> datetime:
        return self.now


def _tracker(session, clock: FrozenClock, **overrides) -> LockoutTracker:
    values = {
        "max_attempts": 3,
        "base_duration_seconds": 60,
        "attempt_window_seconds": 300,
        "max_duration_seconds": 3_600,
    }
    values.update(overrides)
    return LockoutTracker(session, config=LockoutSettings(**values), clock=clock)


@pytest.mark.asyncio
async def test_failures_count_down_then_lock(db_session):
    user = await create_user(db_session, email="lock@example.com", username="lock")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock)

    first = await tracker.record_failure(user)
    second = await tracker.record_failure(user)
    third = await tracker.record_failure(user)

    assert (first.failed_attempt_count, first.status.attempts_remaining) == (1, 2)
    assert (second.failed_attempt_count, second.status.attempts_remaining) == (2, 1)
    assert third.lockout_triggered is True
    assert third.status.is_locked is True
    assert third.status.lockout_expires_at == clock.now + timedelta(seconds=60)
    assert ensure_aware(user.locked_at) == clock.now


@pytest.mark.asyncio
async def test_failures_outside_window_restart_the_count(db_session):
    user = await create_user(db_session, email="window@example.com", username="window")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock)

    await tracker.record_failure(user)
    await tracker.record_failure(user)
    clock.advance(seconds=301)
    outcome = await tracker.record_failure(user)

    assert outcome.failed_attempt_count == 1
    assert outcome.status.is_locked is False
    assert (await tracker.status(user)).attempts_remaining == 2


@pytest.mark.asyncio
async def test_failure_while_locked_does_not_extend_lock(db_session):
    user = await create_user(db_session, email="locked@example.com", username="locked")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock)
    for _ in range(3):
        locked = await tracker.record_failure(user)

    clock.advance(seconds=10)
    outcome = await tracker.record_failure(user)

    assert outcome.lockout_triggered is False
    assert outcome.status.is_locked is True
    assert outcome.status.lockout_expires_at == locked.status.lockout_expires_at


@pytest.mark.asyncio
async def test_lapsed_lock_clears_on_read(db_session):
    user = await create_user(db_session, email="lapsed@example.com", username="lapsed")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock)
    for _ in range(3):
        await tracker.record_failure(user)
    assert (await tracker.status(user)).is_locked is True

    clock.advance(seconds=61)
    current = await tracker.status(user)

    assert current.is_locked is False
    assert current.attempts_remaining == 3
    assert user.failed_attempt_count == 0
    assert user.lockout_expires_at is None


@pytest.mark.asyncio
async def test_lockout_duration_doubles_and_is_capped(db_session):
    user = await create_user(db_session, email="backoff@example.com", username="backoff")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock, max_duration_seconds=200)

    assert await tracker.lockout_duration(user.id) == timedelta(seconds=60)

    db_session.add(
        LoginAttempt(
            user_id=user.id,
            email=user.email,
            ip_address="10.0.0.1",
            success=False,
            lockout_triggered=True,
            created_at=clock.now - timedelta(hours=1),
        )
    )
    await db_session.flush()
    assert await tracker.lockout_duration(user.id) == timedelta(seconds=120)

    db_session.add(
        LoginAttempt(
            user_id=user.id,
            email=user.email,
            ip_address="10.0.0.1",
            success=False,
            lockout_triggered=True,
            created_at=clock.now - timedelta(minutes=5),
        )
    )
    await db_session.flush()
    assert await tracker.lockout_duration(user.id) == timedelta(seconds=200)

    flat = _tracker(db_session, clock, progressive=False)
    assert await flat.lockout_duration(user.id) == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_old_lockouts_do_not_escalate(db_session):
    user = await create_user(db_session, email="history@example.com", username="history")
    clock = FrozenClock()
    tracker = _tracker(db_session, clock)
    db_session.add(
        LoginAttempt(
            user_id=user.id,
            email=user.email,
            ip_address="10.0.0.1",
            success=False,
            lockout_triggered=True,
            created_at=clock.now - timedelta(days=2),
        )
    )
    await db_session.flush()

    assert await tracker.lockout_duration(user.id) == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_unlock_reports_missing_and_unlocked_accounts(db_session):
    await create_user(db_session, email="calm@example.com", username="calm")
    tracker = LockoutTracker(db_session)

    missing = await tracker.unlock("ghost@example.com")
    not_locked = await tracker.unlock("calm@example.com")

    assert (missing.success, missing.message) == (False, "User not found")
    assert (not_locked.success, not_locked.message) == (False, "Account is not locked")


@pytest.mark.asyncio
async def test_repeated_wrong_passwords_lock_account(client, db_session, session_factory, outbox):
    user = await create_user(db_session, email="target@example.com", username="target")

    for _ in range(4):
        response = await client.post(
            "/auth/login", json={"email": "target@example.com", "password": "wrong-secret"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    locked = await client.post(
        "/auth/login", json={"email": "target@example.com", "password": "wrong-secret"}
    )
    assert locked.status_code == status.HTTP_403_FORBIDDEN
    body = locked.json()
    assert body["code"] == "ACCOUNT_LOCKED"
    assert body["attemptsRemaining"] == 0
    assert int(locked.headers["Retry-After"]) > 0
    assert [item["type"] for item in outbox] == ["lockout"]

    correct = await client.post(
        "/auth/login", json={"email": "target@example.com", "password": DEFAULT_PASSWORD}
    )
    assert correct.status_code == status.HTTP_403_FORBIDDEN
    assert correct.json()["code"] == "ACCOUNT_LOCKED"

    check = await client.post("/auth/lockout/check", json={"email": "target@example.com"})
    assert check.json()["isLocked"] is True
    assert check.json()["attemptsRemaining"] == 0
    assert check.json()["estimatedUnlockTime"] is not None

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        assert stored.failed_attempt_count == 5
        locked_events = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.ACCOUNT_LOCKED))
        ).scalars().all()
        assert len(locked_events) == 1
        triggered = (
            await session.execute(select(LoginAttempt).where(LoginAttempt.lockout_triggered.is_(True)))
        ).scalars().all()
        assert len(triggered) == 1


@pytest.mark.asyncio
async def test_successful_login_resets_failure_count(client, db_session, session_factory):
    user = await create_user(db_session, email="reset@example.com", username="reset")
    for _ in range(3):
        await client.post("/auth/login", json={"email": "reset@example.com", "password": "wrong-secret"})

    response = await client.post(
        "/auth/login", json={"email": "reset@example.com", "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == status.HTTP_200_OK

    async with session_factory() as session:
        stored = await session.get(User, user.id)
        assert stored.failed_attempt_count == 0
        assert stored.last_failed_attempt_at is None


@pytest.mark.asyncio
async def test_concurrent_failures_lock_exactly_once(client, db_session, session_factory, outbox):
    await create_user(db_session, email="swarm@example.com", username="swarm")

    responses = await asyncio.gather(
        *(
            client.post("/auth/login", json={"email": "swarm@example.com", "password": "wrong-secret"})
            for _ in range(6)
        )
    )

    codes = [response.status_code for response in responses]
    assert set(codes) <= {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN}
    assert status.HTTP_403_FORBIDDEN in codes
    assert [item["type"] for item in outbox] == ["lockout"]

    async with session_factory() as session:
        locks = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.ACCOUNT_LOCKED))
        ).scalars().all()
        assert len(locks) == 1
        user = await session.scalar(select(User).where(User.email == "swarm@example.com"))
        assert user.locked_at is not None

    correct = await client.post(
        "/auth/login", json={"email": "swarm@example.com", "password": DEFAULT_PASSWORD}
    )
    assert correct.status_code == status.HTTP_403_FORBIDDEN
