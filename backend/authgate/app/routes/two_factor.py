"""Two-factor enrolment and management endpoints."""
from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import get_session, get_two_factor_gate
from ..policies import AUTHENTICATED, SENSITIVE, RequestContext, enforce
from ..two_factor import TwoFactorGate
from .auth import OperationStatus

router = APIRouter(prefix="/auth/2fa", tags=["two-factor"])

logger = logging.getLogger(__name__)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=16)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str = Field(alias="otpauthUrl")
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True)


class BackupCodesResponse(BaseModel):
    backup_codes: list[str] = Field(alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True)


class TwoFactorStatusResponse(BaseModel):
    is_enabled: bool = Field(alias="isEnabled")
    is_setup: bool = Field(alias="isSetup")
    last_used_at: datetime | None = Field(default=None, alias="lastUsedAt")
    backup_codes_remaining: int = Field(alias="backupCodesRemaining")

    model_config = ConfigDict(populate_by_name=True)


@router.post("/setup", response_model=TwoFactorSetupResponse, response_model_by_alias=True)
async def setup_two_factor(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    gate: TwoFactorGate = Depends(get_two_factor_gate),
) -> TwoFactorSetupResponse:
    setup = await gate.setup(context.user)
    await db.commit()
    return TwoFactorSetupResponse(
        secret=setup.secret,
        otpauth_url=setup.otpauth_url,
        backup_codes=setup.backup_codes,
    )


@router.post("/enable", response_model=OperationStatus)
async def enable_two_factor(
    payload: TwoFactorCodeRequest,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    gate: TwoFactorGate = Depends(get_two_factor_gate),
) -> OperationStatus:
    await gate.enable(context.user, payload.code, device=context.device)
    await db.commit()
    logger.info("Enabled two-factor authentication for user %s", context.user.id)
    return OperationStatus(message="Two-factor authentication enabled")


@router.post("/disable", response_model=OperationStatus)
async def disable_two_factor(
    payload: TwoFactorCodeRequest,
    context: RequestContext = Depends(enforce(SENSITIVE)),
    db: AsyncSession = Depends(get_session),
    gate: TwoFactorGate = Depends(get_two_factor_gate),
) -> OperationStatus:
    await gate.disable(context.user, payload.code, device=context.device)
    await db.commit()
    logger.info("Disabled two-factor authentication for user %s", context.user.id)
    return OperationStatus(message="Two-factor authentication disabled")


@router.post(
    "/backup-codes/regenerate",
    response_model=BackupCodesResponse,
    response_model_by_alias=True,
)
async def regenerate_backup_codes(
    payload: TwoFactorCodeRequest,
    context: RequestContext = Depends(enforce(SENSITIVE)),
    db: AsyncSession = Depends(get_session),
    gate: TwoFactorGate = Depends(get_two_factor_gate),
) -> BackupCodesResponse:
    codes = await gate.regenerate_backup_codes(context.user, payload.code, device=context.device)
    await db.commit()
    return BackupCodesResponse(backup_codes=codes)


@router.get("/status", response_model=TwoFactorStatusResponse, response_model_by_alias=True)
async def two_factor_status(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    gate: TwoFactorGate = Depends(get_two_factor_gate),
) -> TwoFactorStatusResponse:
    current = await gate.status(context.user)
    return TwoFactorStatusResponse(
        is_enabled=current["is_enabled"],
        is_setup=current["is_setup"],
        last_used_at=current["last_used_at"],
        backup_codes_remaining=current["backup_codes_remaining"],
    )


__all__ = ["router"]
