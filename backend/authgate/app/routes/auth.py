"""Authentication API endpoints."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import SecurityEventSeverity, User, UserRole, UserTokenPurpose
from ..audit import SecurityAction, SecurityEventLog, record_audit_event
from ..config import settings
from ..dependencies import (
    get_lockout_tracker,
    get_login_service,
    get_notification_dispatcher,
    get_refresh_token_manager,
    get_session,
    get_session_registry,
    get_two_factor_gate,
)
from ..email import NotificationDispatcher, deliver_safely
from ..errors import AccountExists, InvalidResetToken, SecondFactorRequired
from ..lockout import LockoutTracker
from ..login import LoginResult, LoginService
from ..policies import (
    AUTHENTICATED,
    CREDENTIAL_ENTRY,
    PASSWORD_RESET,
    REGISTRATION,
    SECOND_FACTOR,
    STATUS_CHECK,
    RequestContext,
    enforce,
)
from ..refresh_tokens import RefreshTokenManager, RevocationReason
from ..security import hash_password
from ..sessions import SessionRegistry
from ..token_service import TokenService
from ..two_factor import TwoFactorGate

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)

_FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent."


class OperationStatus(BaseModel):
    status: str = "ok"
    message: str | None = None


class UserResource(BaseModel):
    id: int
    email: EmailStr
    username: str
    name: str | None = None
    role: UserRole
    active: bool
    is_admin: bool = Field(alias="isAdmin")
    email_verified: bool = Field(alias="emailVerified")
    created_at: datetime = Field(alias="createdAt")
    last_login_at: datetime | None = Field(default=None, alias="lastLoginAt")

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


def serialize_user(user: User) -> UserResource:
    return UserResource(
        id=user.id,
        email=user.email,
        username=user.username,
        name=user.name,
        role=user.role,
        active=user.active,
        is_admin=user.is_admin,
        email_verified=user.email_verified,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(min_length=8, max_length=256)
    name: str | None = Field(default=None, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)
    remember_me: bool = Field(default=False, alias="rememberMe")

    model_config = ConfigDict(populate_by_name=True)


class SecondFactorRequest(BaseModel):
    handshake_token: str = Field(alias="handshakeToken", min_length=1)
    code: str = Field(min_length=6, max_length=16)

    model_config = ConfigDict(populate_by_name=True)


class LoginResponse(BaseModel):
    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    refresh_expires_at: datetime | None = Field(default=None, alias="refreshExpiresAt")
    remember_me: bool = Field(default=False, alias="rememberMe")
    user: UserResource

    model_config = ConfigDict(populate_by_name=True)


class SecondFactorChallenge(BaseModel):
    requires_second_factor: bool = Field(default=True, alias="requiresSecondFactor")
    handshake_token: str = Field(alias="handshakeToken")
    expires_in: int = Field(alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=256)


class LogoutRequest(BaseModel):
    refresh_token: str | None = Field(default=None, alias="refreshToken")

    model_config = ConfigDict(populate_by_name=True)


class LockoutCheckRequest(BaseModel):
    email: EmailStr


class LockoutCheckResponse(BaseModel):
    is_locked: bool = Field(alias="isLocked")
    attempts_remaining: int = Field(alias="attemptsRemaining")
    estimated_unlock_time: datetime | None = Field(default=None, alias="estimatedUnlockTime")

    model_config = ConfigDict(populate_by_name=True)


def _login_response(result: LoginResult) -> LoginResponse:
    refresh = result.refresh
    return LoginResponse(
        access_token=result.access.token,
        expires_in=result.access.expires_in,
        refresh_token=refresh.token if refresh else None,
        refresh_expires_at=refresh.expires_at if refresh else None,
        remember_me=refresh is not None,
        user=serialize_user(result.user),
    )


@router.post(
    "/register",
    response_model=UserResource,
    status_code=status.HTTP_201_CREATED,
    response_model_by_alias=True,
)
async def register(
    payload: RegisterRequest,
    context: RequestContext = Depends(enforce(REGISTRATION)),
    db: AsyncSession = Depends(get_session),
) -> UserResource:
    email = payload.email.strip().lower()
    username = payload.username.strip()
    existing = await db.scalar(
        select(User.id).where(
            or_(func.lower(User.email) == email, func.lower(User.username) == username.lower())
        )
    )
    if existing is not None:
        raise AccountExists(reason="duplicate_account")

    user = User(
        email=email,
        username=username,
        name=payload.name,
        password_hash=hash_password(payload.password),
        role=UserRole.MEMBER,
    )
    db.add(user)
    await db.flush()
    await record_audit_event(
        db,
        action=SecurityAction.REGISTER,
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
    )
    await db.commit()
    await db.refresh(user)
    logger.info("Registered user %s", user.id)
    return serialize_user(user)


@router.post(
    "/login",
    response_model=LoginResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def login(
    payload: LoginRequest,
    context: RequestContext = Depends(enforce(CREDENTIAL_ENTRY)),
    service: LoginService = Depends(get_login_service),
) -> Any:
    try:
        result = await service.login(
            payload.email,
            payload.password,
            context.device,
            remember_me=payload.remember_me,
        )
    except SecondFactorRequired as challenge:
        body = SecondFactorChallenge(
            handshake_token=challenge.handshake_token,
            expires_in=challenge.expires_in,
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump(by_alias=True))
    return _login_response(result)


@router.post(
    "/login/second-factor",
    response_model=LoginResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def login_second_factor(
    payload: SecondFactorRequest,
    context: RequestContext = Depends(enforce(SECOND_FACTOR)),
    service: LoginService = Depends(get_login_service),
) -> LoginResponse:
    result = await service.complete_second_factor(payload.handshake_token, payload.code, context.device)
    return _login_response(result)


@router.post("/forgot-password", response_model=OperationStatus)
async def forgot_password(
    payload: ForgotPasswordRequest,
    context: RequestContext = Depends(enforce(PASSWORD_RESET)),
    db: AsyncSession = Depends(get_session),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> OperationStatus:
    email = payload.email.strip().lower()
    user = await db.scalar(select(User).where(func.lower(User.email) == email))
    if user is None or not user.active:
        logger.info("Password reset requested for unknown or inactive account")
        return OperationStatus(message=_FORGOT_PASSWORD_MESSAGE)

    record, token = await TokenService(db).issue(
        user_id=user.id,
        purpose=UserTokenPurpose.PASSWORD_RESET,
        ttl_seconds=settings.auth.password_reset_token_ttl_seconds,
    )
    await db.commit()
    await deliver_safely(
        notifier.send_password_reset_email(email=user.email, token=token, expires_at=record.expires_at),
        kind="password_reset",
    )
    logger.info("Issued password reset token for user %s from %s", user.id, context.device.ip_address)
    return OperationStatus(message=_FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password", response_model=OperationStatus)
async def reset_password(
    payload: ResetPasswordRequest,
    context: RequestContext = Depends(enforce(PASSWORD_RESET)),
    db: AsyncSession = Depends(get_session),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    sessions: SessionRegistry = Depends(get_session_registry),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> OperationStatus:
    record = await TokenService(db).consume(token=payload.token, purpose=UserTokenPurpose.PASSWORD_RESET)
    if record is None:
        raise InvalidResetToken(reason="reset_token_not_live")

    user = await db.get(User, record.user_id, populate_existing=True)
    if user is None or not user.active:
        await db.rollback()
        raise InvalidResetToken(reason="reset_token_owner_inactive")

    user.password_hash = hash_password(payload.password)
    await db.flush()
    await lockout.reset(user)
    revoked_sessions = await sessions.revoke_all(user.id)
    revoked_tokens = await refresh_tokens.revoke_all(user.id, reason=RevocationReason.PASSWORD_RESET)
    await record_audit_event(
        db,
        action=SecurityAction.PASSWORD_RESET,
        result="success",
        severity=SecurityEventSeverity.MEDIUM,
        actor_user_id=user.id,
        target_user_id=user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"sessions_revoked": revoked_sessions, "refresh_tokens_revoked": revoked_tokens},
    )
    await db.commit()
    return OperationStatus(message="Password has been reset")


@router.post("/logout", response_model=OperationStatus)
async def logout(
    payload: LogoutRequest | None = None,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    sessions: SessionRegistry = Depends(get_session_registry),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> OperationStatus:
    principal = context.caller
    user = principal.user
    refresh_token = payload.refresh_token if payload else None

    await sessions.delete_by_credential(principal.credential_ref)
    if refresh_token:
        revoked = 1 if await refresh_tokens.revoke(refresh_token) else 0
    else:
        revoked = await refresh_tokens.revoke_all(user.id, reason=RevocationReason.LOGOUT)
    await record_audit_event(
        db,
        action=SecurityAction.LOGOUT,
        result="success",
        actor_user_id=user.id,
        target_user_id=user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"session_id": principal.session_id, "refresh_tokens_revoked": revoked},
    )
    await db.commit()
    return OperationStatus(message="Logged out")


@router.get("/me", response_model=UserResource, response_model_by_alias=True)
async def me(context: RequestContext = Depends(enforce(AUTHENTICATED))) -> UserResource:
    return serialize_user(context.user)


@router.post("/lockout/check", response_model=LockoutCheckResponse, response_model_by_alias=True)
async def lockout_check(
    payload: LockoutCheckRequest,
    context: RequestContext = Depends(enforce(STATUS_CHECK)),
    db: AsyncSession = Depends(get_session),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
) -> LockoutCheckResponse:
    current = await lockout.status_for_email(payload.email)
    await db.commit()
    return LockoutCheckResponse(
        is_locked=current.is_locked,
        attempts_remaining=current.attempts_remaining,
        estimated_unlock_time=current.lockout_expires_at,
    )


@router.get("/security/status")
async def security_status(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    sessions: SessionRegistry = Depends(get_session_registry),
    refresh_tokens: RefreshTokenManager = Depends(get_refresh_token_manager),
    two_factor: TwoFactorGate = Depends(get_two_factor_gate),
) -> dict[str, Any]:
    user = context.user
    current = await lockout.status(user)
    second_factor = await two_factor.status(user)
    active_sessions = await sessions.count_active(user.id)
    active_refresh = await refresh_tokens.count_active(user.id)
    await db.commit()
    return {
        "lockout": {
            "isLocked": current.is_locked,
            "attemptsRemaining": current.attempts_remaining,
            "lockoutExpiresAt": current.lockout_expires_at,
        },
        "twoFactor": {
            "isEnabled": second_factor["is_enabled"],
            "isSetup": second_factor["is_setup"],
            "backupCodesRemaining": second_factor["backup_codes_remaining"],
        },
        "activeSessions": active_sessions,
        "activeRefreshTokens": active_refresh,
        "lastLoginAt": user.last_login_at,
        "emailVerified": user.email_verified,
    }


@router.get("/security/login-history")
async def login_history(
    limit: int = 20,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    limit = max(1, min(limit, 100))
    history = await SecurityEventLog(db).login_history(context.user.id, limit=limit)
    entries = [
        {
            "id": item["id"],
            "success": item["success"],
            "failureReason": item["failure_reason"],
            "lockoutTriggered": item["lockout_triggered"],
            "ipAddress": item["ip_address"],
            "location": item["location"],
            "device": item["device"],
            "browser": item["browser"],
            "os": item["os"],
            "createdAt": item["created_at"],
        }
        for item in history
    ]
    return {"history": entries, "count": len(entries)}


__all__ = [
    "OperationStatus",
    "UserResource",
    "router",
    "serialize_user",
]
