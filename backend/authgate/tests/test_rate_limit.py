from __future__ import annotations

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from backend.authgate.app.audit import SecurityAction
from backend.authgate.app.blocklist import AddressBlocklist
from backend.authgate.app.errors import RateLimited
from backend.authgate.app.rate_limit import RateLimitClass, RateLimiter, RateLimitRule
from backend.authgate.app.storage import MemoryCache
from backend.authgate.db.models import AuditEvent

from .utils import create_user, generous_rate_limits


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.value = start

    def advance(self, seconds: float) -> None:
        self.value += seconds

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def rate_limits():
    return generous_rate_limits(login_limit=2, password_reset_limit=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    rules = {rate_class: RateLimitRule(limit=100, window_seconds=60) for rate_class in RateLimitClass}
    rules[RateLimitClass.LOGIN] = RateLimitRule(limit=3, window_seconds=60)
    return RateLimiter(cache=MemoryCache(clock=clock), rules=rules, namespace="test:rl")


@pytest.mark.asyncio
async def test_exactly_limit_requests_are_allowed(limiter):
    decisions = [await limiter.check("10.0.0.1", RateLimitClass.LOGIN) for _ in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert [decision.remaining for decision in decisions] == [2, 1, 0, 0]
    assert decisions[-1].retry_after >= 1
    assert decisions[0].headers()["X-RateLimit-Limit"] == "3"


@pytest.mark.asyncio
async def test_window_resets_after_expiry(limiter, clock):
    for _ in range(3):
        await limiter.check("10.0.0.1", RateLimitClass.LOGIN)
    assert (await limiter.check("10.0.0.1", RateLimitClass.LOGIN)).allowed is False

    clock.advance(61)

    assert (await limiter.check("10.0.0.1", RateLimitClass.LOGIN)).allowed is True


@pytest.mark.asyncio
async def test_window_does_not_slide_on_later_requests(limiter, clock):
    await limiter.check("10.0.0.1", RateLimitClass.LOGIN)
    clock.advance(50)
    await limiter.check("10.0.0.1", RateLimitClass.LOGIN)
    clock.advance(11)

    decision = await limiter.check("10.0.0.1", RateLimitClass.LOGIN)

    assert decision.allowed is True
    assert decision.remaining == 2


@pytest.mark.asyncio
async def test_budgets_are_independent_per_address_and_class(limiter):
    for _ in range(3):
        await limiter.check("10.0.0.1", RateLimitClass.LOGIN)

    assert (await limiter.check("10.0.0.2", RateLimitClass.LOGIN)).allowed is True
    assert (await limiter.check("10.0.0.1", RateLimitClass.AUTH)).allowed is True
    assert (await limiter.check("10.0.0.1", RateLimitClass.LOGIN)).allowed is False


@pytest.mark.asyncio
async def test_enforce_raises_and_reset_restores_budget(limiter):
    for _ in range(3):
        await limiter.enforce("10.0.0.1", RateLimitClass.LOGIN)

    with pytest.raises(RateLimited) as excinfo:
        await limiter.enforce("10.0.0.1", RateLimitClass.LOGIN)
    assert excinfo.value.headers["X-RateLimit-Remaining"] == "0"
    assert excinfo.value.status_code == status.HTTP_429_TOO_MANY_REQUESTS

    await limiter.reset("10.0.0.1", RateLimitClass.LOGIN)
    assert (await limiter.check("10.0.0.1", RateLimitClass.LOGIN)).allowed is True


def test_rules_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(
            cache=MemoryCache(),
            rules={RateLimitClass.LOGIN: RateLimitRule(limit=0, window_seconds=60)},
        )


@pytest.mark.asyncio
async def test_blocklist_entries_expire(clock):
    blocklist = AddressBlocklist(cache=MemoryCache(clock=clock), default_duration_seconds=120)

    entry = await blocklist.block("203.0.113.9", reason="manual")
    assert entry.reason == "manual"
    assert await blocklist.is_blocked("203.0.113.9") is True
    assert [item.address for item in await blocklist.list_blocked()] == ["203.0.113.9"]

    clock.advance(121)

    assert await blocklist.is_blocked("203.0.113.9") is False
    assert await blocklist.unblock("203.0.113.9") is False


@pytest.mark.asyncio
async def test_login_budget_returns_429(client, db_session, session_factory):
    await create_user(db_session, email="spray@example.com", username="spray")

    for _ in range(2):
        response = await client.post(
            "/auth/login", json={"email": "spray@example.com", "password": "wrong-secret"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    limited = await client.post(
        "/auth/login", json={"email": "spray@example.com", "password": "wrong-secret"}
    )

    assert limited.status_code == status.HTTP_429_TOO_MANY_REQUESTS
    assert limited.json()["code"] == "RATE_LIMITED"
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.headers["X-RateLimit-Limit"] == "2"

    async with session_factory() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.RATE_LIMITED))
        ).scalars().all()
        assert len(events) == 1
        assert events[0].metadata_json["rate_class"] == "login"


@pytest.mark.asyncio
async def test_route_class_budget_is_enforced_before_handler(client):
    first = await client.post("/auth/forgot-password", json={"email": "someone@example.com"})
    second = await client.post("/auth/forgot-password", json={"email": "someone@example.com"})

    assert first.status_code == status.HTTP_200_OK
    assert first.headers["X-RateLimit-Limit"] == "1"
    assert second.status_code == status.HTTP_429_TOO_MANY_REQUESTS


@pytest.mark.asyncio
async def test_budgets_are_tracked_per_client_address(client):
    first = await client.post(
        "/auth/forgot-password",
        json={"email": "someone@example.com"},
        headers={"X-Forwarded-For": "198.51.100.1"},
    )
    second = await client.post(
        "/auth/forgot-password",
        json={"email": "someone@example.com"},
        headers={"X-Forwarded-For": "198.51.100.2"},
    )

    assert first.status_code == second.status_code == status.HTTP_200_OK


@pytest.mark.asyncio
async def test_blocked_address_is_rejected_first(client, runtime, session_factory):
    await runtime.blocklist.block("192.0.2.44", reason="manual")

    response = await client.post(
        "/auth/lockout/check",
        json={"email": "someone@example.com"},
        headers={"X-Forwarded-For": "192.0.2.44"},
    )

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["code"] == "ADDRESS_BLOCKED"

    async with session_factory() as session:
        blocked = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.BLOCKED_REQUEST))
        ).scalars().all()
        assert [event.ip_address for event in blocked] == ["192.0.2.44"]


@pytest.mark.asyncio
async def test_forwarded_header_from_untrusted_peer_is_ignored(app, session_factory):
    transport = ASGITransport(app=app, client=("203.0.113.200", 40_000))
    async with AsyncClient(transport=transport, base_url="http://testserver") as remote:
        first = await remote.post(
            "/auth/forgot-password",
            json={"email": "someone@example.com"},
            headers={"X-Forwarded-For": "198.51.100.1"},
        )
        second = await remote.post(
            "/auth/forgot-password",
            json={"email": "someone@example.com"},
            headers={"X-Forwarded-For": "198.51.100.2"},
        )

    assert first.status_code == status.HTTP_200_OK
    assert second.status_code == status.HTTP_429_TOO_MANY_REQUESTS

    async with session_factory() as session:
        limited = (
            await session.execute(select(AuditEvent).where(AuditEvent.action == SecurityAction.RATE_LIMITED))
        ).scalars().all()
        assert [event.ip_address for event in limited] == ["203.0.113.200"]
