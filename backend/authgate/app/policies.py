"""Declarative route policies and the single pipeline that evaluates them.

Each route names one :class:`RoutePolicy`.  :func:`evaluate_policy` applies its
checks in a fixed order: blocked address, global budget, class budget, bearer
credential with a live session, then role.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import SecurityEventSeverity, User, UserRole
from ..db.session import get_session
from .audit import SecurityAction, record_audit_event
from .config import settings
from .dependencies import get_runtime
from .devices import DeviceContext, resolve_client_address
from .errors import AddressBlocked, RateLimited
from .logging import bind_contextvars
from .rate_limit import RateLimitClass, RateLimitDecision
from .runtime import SecurityRuntime
from .security import TokenDecodeError, decode_access_token, hash_token
from .sessions import SessionRegistry


_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RoutePolicy:
    rate_class: RateLimitClass | None = None
    authenticated: bool = False
    roles: frozenset[UserRole] = field(default_factory=frozenset)
    apply_global: bool = True


# The login budget itself is consumed inside CredentialVerifier.
CREDENTIAL_ENTRY = RoutePolicy()
SECOND_FACTOR = RoutePolicy(rate_class=RateLimitClass.LOGIN)
REGISTRATION = RoutePolicy(rate_class=RateLimitClass.REGISTER)
PASSWORD_RESET = RoutePolicy(rate_class=RateLimitClass.PASSWORD_RESET)
STATUS_CHECK = RoutePolicy(rate_class=RateLimitClass.AUTH)
TOKEN_RENEWAL = RoutePolicy(rate_class=RateLimitClass.AUTH)
AUTHENTICATED = RoutePolicy(authenticated=True)
SENSITIVE = RoutePolicy(rate_class=RateLimitClass.SENSITIVE, authenticated=True)
ADMIN = RoutePolicy(
    rate_class=RateLimitClass.AUTH,
    authenticated=True,
    roles=frozenset({UserRole.ADMIN}),
)
ADMIN_SENSITIVE = RoutePolicy(
    rate_class=RateLimitClass.SENSITIVE,
    authenticated=True,
    roles=frozenset({UserRole.ADMIN}),
)


@dataclass(frozen=True, slots=True)
class Principal:
    """The authenticated caller and the session backing its credential."""

    user: User
    session_id: str
    credential_ref: str


@dataclass(frozen=True, slots=True)
class RequestContext:
    device: DeviceContext
    principal: Principal | None = None

    @property
    def caller(self) -> Principal:
        if self.principal is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        return self.principal

    @property
    def user(self) -> User:
        return self.caller.user


def device_from_request(request: Request) -> DeviceContext:
    peer = request.client.host if request.client else None
    return DeviceContext(
        ip_address=resolve_client_address(
            peer,
            request.headers.get("x-forwarded-for"),
            settings.security.trusted_proxy_networks,
        ),
        user_agent=request.headers.get("user-agent"),
    )


async def _enforce_budget(
    db: AsyncSession,
    runtime: SecurityRuntime,
    device: DeviceContext,
    rate_class: RateLimitClass,
    path: str,
) -> RateLimitDecision:
    decision = await runtime.rate_limiter.check(device.ip_address, rate_class)
    if decision.allowed:
        return decision
    await record_audit_event(
        db,
        action=SecurityAction.RATE_LIMITED,
        result="rejected",
        severity=SecurityEventSeverity.MEDIUM,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        metadata={"rate_class": rate_class.value, "limit": decision.limit, "path": path},
    )
    await db.commit()
    raise RateLimited(
        limit=decision.limit,
        reset_at=decision.reset_at,
        retry_after=decision.retry_after,
        reason=f"rate_limited:{rate_class.value}",
    )


async def _authenticate(
    db: AsyncSession,
    credentials: HTTPAuthorizationCredentials | None,
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = credentials.credentials
    try:
        claims = decode_access_token(token)
    except TokenDecodeError as exc:
        detail = "Token expired" if exc.expired else "Invalid token"
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail=detail) from exc

    credential_ref = hash_token(token)
    registry = SessionRegistry(db)
    record = await registry.lookup(credential_ref)
    if record is None or record.id != claims.session_id or record.user_id != claims.subject:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Session is no longer valid")

    user = await db.get(User, claims.subject, populate_existing=True)
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.active:
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Account is suspended")

    await registry.touch(credential_ref)
    await db.commit()
    bind_contextvars(user_id=user.id)
    return Principal(user=user, session_id=record.id, credential_ref=credential_ref)


async def evaluate_policy(
    policy: RoutePolicy,
    *,
    request: Request,
    response: Response,
    db: AsyncSession,
    runtime: SecurityRuntime,
    credentials: HTTPAuthorizationCredentials | None,
) -> RequestContext:
    device = device_from_request(request)
    path = request.url.path

    if await runtime.blocklist.is_blocked(device.ip_address):
        await record_audit_event(
            db,
            action=SecurityAction.BLOCKED_REQUEST,
            result="blocked",
            severity=SecurityEventSeverity.MEDIUM,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            metadata={"path": path},
        )
        await db.commit()
        raise AddressBlocked(reason="address_blocked")

    decision: RateLimitDecision | None = None
    if policy.apply_global:
        decision = await _enforce_budget(db, runtime, device, RateLimitClass.GLOBAL, path)
    if policy.rate_class is not None:
        decision = await _enforce_budget(db, runtime, device, policy.rate_class, path)

    principal = None
    if policy.authenticated:
        principal = await _authenticate(db, credentials)
        if policy.roles and principal.user.role not in policy.roles:
            raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Insufficient role")

    if decision is not None:
        response.headers.update(decision.headers())
    return RequestContext(device=device, principal=principal)


def enforce(policy: RoutePolicy) -> Callable[..., object]:
    """Build a dependency that evaluates ``policy`` and yields the request context."""

    async def dependency(
        request: Request,
        response: Response,
        db: AsyncSession = Depends(get_session),
        runtime: SecurityRuntime = Depends(get_runtime),
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    ) -> RequestContext:
        return await evaluate_policy(
            policy,
            request=request,
            response=response,
            db=db,
            runtime=runtime,
            credentials=credentials,
        )

    return dependency


__all__ = [
    "ADMIN",
    "ADMIN_SENSITIVE",
    "AUTHENTICATED",
    "CREDENTIAL_ENTRY",
    "PASSWORD_RESET",
    "Principal",
    "REGISTRATION",
    "RequestContext",
    "RoutePolicy",
    "SECOND_FACTOR",
    "SENSITIVE",
    "STATUS_CHECK",
    "TOKEN_RENEWAL",
    "device_from_request",
    "enforce",
    "evaluate_policy",
]
