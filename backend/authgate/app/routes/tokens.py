"""Refresh token endpoints: renewal, rotation and revocation."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit import SecurityAction, record_audit_event
from ..dependencies import get_refresh_token_manager, get_session
from ..policies import AUTHENTICATED, TOKEN_RENEWAL, RequestContext, enforce
from ..refresh_tokens import RefreshTokenManager, RevocationReason
from .auth import OperationStatus

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class AccessTokenResponse(BaseModel):
    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class RotatedTokenResponse(AccessTokenResponse):
    refresh_token: str = Field(alias="refreshToken")
    refresh_expires_at: datetime = Field(alias="refreshExpiresAt")
    remember_me: bool = Field(alias="rememberMe")


class RevokeAllRequest(BaseModel):
    except_token: str | None = Field(default=None, alias="exceptToken")

    model_config = ConfigDict(populate_by_name=True)


@router.post("/refresh", response_model=AccessTokenResponse, response_model_by_alias=True)
async def refresh_access_token(
    payload: RefreshRequest,
    context: RequestContext = Depends(enforce(TOKEN_RENEWAL)),
    db: AsyncSession = Depends(get_session),
    manager: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> AccessTokenResponse:
    access = await manager.refresh_access(payload.refresh_token, context.device)
    await db.commit()
    return AccessTokenResponse(access_token=access.token, expires_in=access.expires_in)


@router.post("/refresh/rotate", response_model=RotatedTokenResponse, response_model_by_alias=True)
async def rotate_refresh_token(
    payload: RefreshRequest,
    context: RequestContext = Depends(enforce(TOKEN_RENEWAL)),
    db: AsyncSession = Depends(get_session),
    manager: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> RotatedTokenResponse:
    rotated = await manager.rotate(payload.refresh_token, context.device)
    await record_audit_event(
        db,
        action=SecurityAction.REFRESH,
        result="success",
        actor_user_id=rotated.user.id,
        target_user_id=rotated.user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"lineage_id": rotated.refresh.lineage_id},
    )
    await db.commit()
    return RotatedTokenResponse(
        access_token=rotated.access.token,
        expires_in=rotated.access.expires_in,
        refresh_token=rotated.refresh.token,
        refresh_expires_at=rotated.refresh.expires_at,
        remember_me=rotated.refresh.remember_me,
    )


@router.get("/refresh-tokens")
async def list_refresh_tokens(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    manager: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> dict[str, Any]:
    user = context.user
    tokens = [
        {
            "id": item["id"],
            "device": item["device"],
            "location": item["location"],
            "createdAt": item["created_at"],
            "expiresAt": item["expires_at"],
            "lastUsedAt": item["last_used_at"],
            "rememberMe": item["remember_me"],
        }
        for item in await manager.list(user.id)
    ]
    stats = await manager.statistics(user.id)
    return {
        "tokens": tokens,
        "stats": {
            "totalActive": stats["total_active"],
            "rememberMe": stats["remember_me"],
            "oldest": stats["oldest"],
            "newest": stats["newest"],
        },
    }


@router.delete("/refresh-tokens/{token_id}", response_model=OperationStatus)
async def revoke_refresh_token(
    token_id: str,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    manager: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> OperationStatus:
    revoked = await manager.revoke_by_id(token_id, context.user.id)
    if not revoked:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Refresh token not found")
    await db.commit()
    logger.info("User %s revoked refresh token %s", context.user.id, token_id)
    return OperationStatus(message="Refresh token revoked")


@router.delete("/refresh-tokens")
async def revoke_all_refresh_tokens(
    payload: RevokeAllRequest | None = None,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    manager: RefreshTokenManager = Depends(get_refresh_token_manager),
) -> dict[str, Any]:
    except_token = payload.except_token if payload else None
    count = await manager.revoke_all(
        context.user.id,
        except_token=except_token,
        reason=RevocationReason.REVOKE_ALL,
    )
    await db.commit()
    return {"message": f"Revoked {count} refresh tokens", "revoked": count}


__all__ = ["router"]
