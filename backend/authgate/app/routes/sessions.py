"""Session listing and revocation for the authenticated caller."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..audit import SecurityAction, record_audit_event
from ..dependencies import get_session, get_session_registry
from ..policies import AUTHENTICATED, RequestContext, enforce
from ..sessions import SessionRegistry
from .auth import OperationStatus

router = APIRouter(prefix="/auth/sessions", tags=["sessions"])


def _session_payload(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item["id"],
        "device": item["device"],
        "browser": item["browser"],
        "os": item["os"],
        "location": item["location"],
        "ipAddress": item["ip_address"],
        "createdAt": item["created_at"],
        "lastActive": item["last_active"],
        "expiresAt": item["expires_at"],
        "current": item["current"],
    }


@router.get("")
async def list_sessions(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict[str, Any]:
    principal = context.caller
    user_id = principal.user.id
    sessions = await registry.list(user_id, current_credential_ref=principal.credential_ref)
    stats = await registry.stats(user_id)
    return {
        "sessions": [_session_payload(item) for item in sessions],
        "stats": {
            "totalActive": stats["total_active"],
            "uniqueDevices": stats["unique_devices"],
            "recentLogins": stats["recent_logins"],
            "oldestSession": stats["oldest_session"],
        },
    }


@router.delete("/{session_id}", response_model=OperationStatus)
async def revoke_session(
    session_id: str,
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    registry: SessionRegistry = Depends(get_session_registry),
) -> OperationStatus:
    principal = context.caller
    await registry.revoke(
        principal.user.id,
        session_id,
        current_credential_ref=principal.credential_ref,
    )
    await record_audit_event(
        db,
        action=SecurityAction.SESSION_REVOKED,
        result="success",
        actor_user_id=principal.user.id,
        target_user_id=principal.user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"session_id": session_id},
    )
    await db.commit()
    return OperationStatus(message="Session revoked")


@router.delete("")
async def revoke_other_sessions(
    context: RequestContext = Depends(enforce(AUTHENTICATED)),
    db: AsyncSession = Depends(get_session),
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict[str, Any]:
    principal = context.caller
    count = await registry.revoke_all(principal.user.id, except_credential_ref=principal.credential_ref)
    await record_audit_event(
        db,
        action=SecurityAction.SESSION_REVOKED,
        result="success",
        actor_user_id=principal.user.id,
        target_user_id=principal.user.id,
        ip_address=context.device.ip_address,
        user_agent=context.device.user_agent,
        metadata={"scope": "all_except_current", "count": count},
    )
    await db.commit()
    return {"message": f"Revoked {count} sessions", "revoked": count}


__all__ = ["router"]
