"""Administrative security endpoints: lockouts, address blocks and metrics."""
from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import AuditEvent, SecurityEventSeverity, User
from ..audit import SecurityAction, SecurityEventLog, record_audit_event
from ..config import settings
from ..dependencies import (
    get_lockout_tracker,
    get_notification_dispatcher,
    get_runtime,
    get_session,
    get_threat_monitor,
)
from ..email import NotificationDispatcher, deliver_safely
from ..lockout import LockoutTracker, ensure_aware
from ..policies import ADMIN, ADMIN_SENSITIVE, RequestContext, enforce
from ..runtime import SecurityRuntime
from ..threats import ThreatMonitor

router = APIRouter(prefix="/admin/security", tags=["admin"])

logger = logging.getLogger(__name__)

Timeframe = Literal["hour", "day", "week"]


class UnlockAccountRequest(BaseModel):
    email: EmailStr
    reason: str | None = Field(default=None, max_length=255)


class BlockAddressRequest(BaseModel):
    ip_address: str = Field(alias="ipAddress", min_length=1, max_length=64)
    reason: str = Field(min_length=1, max_length=255)
    duration_seconds: int | None = Field(default=None, alias="durationSeconds", ge=60)

    model_config = ConfigDict(populate_by_name=True)


class AnalyzeAddressRequest(BaseModel):
    ip_address: str = Field(alias="ipAddress", min_length=1, max_length=64)
    user_agent: str | None = Field(default=None, alias="userAgent")

    model_config = ConfigDict(populate_by_name=True)


def _locked_account(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "lockedAt": ensure_aware(user.locked_at),
        "lockoutExpiresAt": ensure_aware(user.lockout_expires_at),
        "failedAttemptCount": user.failed_attempt_count,
    }


def _lockout_stats(stats: dict[str, Any]) -> dict[str, Any]:
    return {
        "timeframe": stats["timeframe"],
        "failedAttempts": stats["failed_attempts"],
        "lockouts": stats["lockouts"],
        "uniqueAddresses": stats["unique_addresses"],
        "since": stats["since"],
    }


def _security_metrics(metrics: dict[str, Any]) -> dict[str, Any]:
    return {
        "timeframe": metrics["timeframe"],
        "failedLogins": metrics["failed_logins"],
        "rateLimitViolations": metrics["rate_limit_violations"],
        "lockedAccounts": metrics["locked_accounts"],
        "suspiciousAddresses": metrics["suspicious_addresses"],
        "averageAttemptsPerAddress": metrics["average_attempts_per_address"],
        "blockedAddresses": metrics["blocked_addresses"],
    }


def _serialize_event(event: AuditEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "action": event.action,
        "result": event.result,
        "severity": event.severity.value if event.severity else None,
        "actorUserId": event.actor_user_id,
        "targetUserId": event.target_user_id,
        "ipAddress": event.ip_address,
        "userAgent": event.user_agent,
        "occurredAt": ensure_aware(event.occurred_at),
        "metadata": event.metadata_json or {},
    }


@router.get("/locked-accounts")
async def list_locked_accounts(
    context: RequestContext = Depends(enforce(ADMIN_SENSITIVE)),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
) -> dict[str, Any]:
    accounts = [_locked_account(user) for user in await lockout.list_locked()]
    return {
        "message": "Locked accounts retrieved successfully",
        "data": accounts,
        "count": len(accounts),
    }


@router.post("/unlock-account")
async def unlock_account(
    payload: UnlockAccountRequest,
    context: RequestContext = Depends(enforce(ADMIN_SENSITIVE)),
    db: AsyncSession = Depends(get_session),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> dict[str, Any]:
    result = await lockout.unlock(payload.email)
    target = result.user
    if not result.success or target is None:
        return {"success": False, "message": result.message}

    await record_audit_event(
        db,
        action=SecurityAction.ACCOUNT_UNLOCKED,
        result="success",
        severity=SecurityEventSeverity.MEDIUM,
        actor_user_id=context.user.id,
        target_user_id=target.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"reason": payload.reason or "Manual unlock"},
    )
    await db.commit()
    logger.info("Admin %s unlocked account %s", context.user.id, target.id)
    await deliver_safely(notifier.send_unlock_notice(email=target.email), kind="unlock")
    return {"success": True, "message": result.message}


@router.get("/lockout-stats")
async def lockout_statistics(
    timeframe: Timeframe = Query(default="day"),
    context: RequestContext = Depends(enforce(ADMIN)),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
) -> dict[str, Any]:
    stats = await lockout.statistics(timeframe)
    return {
        "message": "Lockout statistics retrieved successfully",
        "data": _lockout_stats(stats),
    }


@router.get("/metrics")
async def security_metrics(
    timeframe: Timeframe = Query(default="hour"),
    context: RequestContext = Depends(enforce(ADMIN)),
    threats: ThreatMonitor = Depends(get_threat_monitor),
) -> dict[str, Any]:
    metrics = await threats.metrics(timeframe)
    return {
        "message": "Security metrics retrieved successfully",
        "data": _security_metrics(metrics),
    }


@router.post("/block-ip")
async def block_address(
    payload: BlockAddressRequest,
    context: RequestContext = Depends(enforce(ADMIN_SENSITIVE)),
    db: AsyncSession = Depends(get_session),
    runtime: SecurityRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    address = payload.ip_address.strip()
    if address == context.device.ip_address:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="Refusing to block the caller's own address")

    entry = await runtime.blocklist.block(
        address,
        reason=f"Admin block: {payload.reason}",
        duration_seconds=payload.duration_seconds,
    )
    await record_audit_event(
        db,
        action=SecurityAction.ADDRESS_BLOCKED,
        result="success",
        severity=SecurityEventSeverity.HIGH,
        actor_user_id=context.user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"address": address, "reason": payload.reason, "expires_at": entry.expires_at.isoformat()},
    )
    await db.commit()
    return {
        "message": f"IP {address} blocked successfully",
        "blockedUntil": entry.expires_at,
        "reason": payload.reason,
    }


@router.delete("/blocked-ips/{ip_address}")
async def unblock_address(
    ip_address: str,
    context: RequestContext = Depends(enforce(ADMIN_SENSITIVE)),
    db: AsyncSession = Depends(get_session),
    runtime: SecurityRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    if not await runtime.blocklist.unblock(ip_address):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Address is not blocked")
    await record_audit_event(
        db,
        action=SecurityAction.ADDRESS_UNBLOCKED,
        result="success",
        severity=SecurityEventSeverity.MEDIUM,
        actor_user_id=context.user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"address": ip_address},
    )
    await db.commit()
    return {"message": f"IP {ip_address} unblocked successfully"}


@router.get("/ip-status/{ip_address}")
async def address_status(
    ip_address: str,
    context: RequestContext = Depends(enforce(ADMIN)),
    runtime: SecurityRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    entry = await runtime.blocklist.get(ip_address)
    payload: dict[str, Any] = {
        "ipAddress": ip_address,
        "isBlocked": entry is not None,
        "status": "BLOCKED" if entry is not None else "ALLOWED",
    }
    if entry is not None:
        payload["reason"] = entry.reason
        payload["blockedUntil"] = entry.expires_at
    return payload


@router.post("/analyze-ip")
async def analyze_address(
    payload: AnalyzeAddressRequest,
    context: RequestContext = Depends(enforce(ADMIN)),
    db: AsyncSession = Depends(get_session),
    threats: ThreatMonitor = Depends(get_threat_monitor),
) -> dict[str, Any]:
    assessment = await threats.analyze(payload.ip_address, payload.user_agent)
    await db.commit()
    return {
        "message": "IP analysis completed",
        "ipAddress": payload.ip_address,
        "analysis": {
            "isSuspicious": assessment.is_suspicious,
            "riskScore": assessment.risk_score,
            "reasons": assessment.reasons,
            "blocked": assessment.blocked,
        },
    }


@router.get("/events")
async def security_events(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    severity: SecurityEventSeverity | None = Query(default=None),
    action: str | None = Query(default=None, max_length=64),
    context: RequestContext = Depends(enforce(ADMIN)),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    page = await SecurityEventLog(db).recent(limit=limit, offset=offset, severity=severity, action=action)
    return {
        "message": "Security events retrieved successfully",
        "data": {
            "events": [_serialize_event(event) for event in page.events],
            "pagination": {"limit": limit, "offset": offset, "total": page.total},
        },
    }


@router.get("/dashboard")
async def security_dashboard(
    context: RequestContext = Depends(enforce(ADMIN)),
    lockout: LockoutTracker = Depends(get_lockout_tracker),
    threats: ThreatMonitor = Depends(get_threat_monitor),
) -> dict[str, Any]:
    locked = [_locked_account(user) for user in await lockout.list_locked()]
    stats = _lockout_stats(await lockout.statistics("day"))
    metrics = _security_metrics(await threats.metrics("day"))
    return {
        "message": "Security dashboard data retrieved successfully",
        "data": {
            "summary": {
                "activeLockedAccounts": len(locked),
                "failedLoginsToday": stats["failedAttempts"],
                "lockoutsToday": stats["lockouts"],
                "suspiciousIPsToday": metrics["suspiciousAddresses"],
            },
            "lockedAccounts": locked,
            "lockoutStats": stats,
            "securityMetrics": metrics,
        },
    }


@router.get("/config")
async def security_config(
    context: RequestContext = Depends(enforce(ADMIN)),
    runtime: SecurityRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    lockout = settings.lockout
    return {
        "message": "Security configuration retrieved successfully",
        "data": {
            "lockout": {
                "maxAttempts": lockout.max_attempts,
                "lockoutDurationSeconds": lockout.base_duration_seconds,
                "attemptWindowSeconds": lockout.attempt_window_seconds,
                "progressiveLockout": lockout.progressive,
                "maxDurationSeconds": lockout.max_duration_seconds,
            },
            "rateLimit": {
                rate_class.value: {"limit": rule.limit, "windowSeconds": rule.window_seconds}
                for rate_class, rule in runtime.rate_limiter.rules.items()
            },
        },
    }


__all__ = ["router"]
