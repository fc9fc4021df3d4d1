"""Dispatcher for security notifications sent to account owners."""
from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime

from .config import settings

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Send password reset links and security notices to end users.

    The default implementation only logs; deployments override the dependency
    with a delivering subclass.
    """

    def __init__(self) -> None:
        self._config = settings.auth

    def _build_url(self, path: str, token: str) -> str:
        base = self._config.public_base_url.rstrip("/")
        suffix = path if path.startswith("/") else f"/{path}"
        return f"{base}{suffix}?token={token}"

    def password_reset_url(self, token: str) -> str:
        return self._build_url(self._config.password_reset_path, token)

    async def send_password_reset_email(
        self,
        *,
        email: str,
        token: str,
        expires_at: datetime,
    ) -> None:
        url = self.password_reset_url(token)
        logger.info(
            "Dispatching password reset email",
            extra={
                "email": email,
                "expires_at": expires_at.isoformat(),
                "url": url,
                "ttl_seconds": self._config.password_reset_token_ttl_seconds,
            },
        )

    async def send_lockout_notice(
        self,
        *,
        email: str,
        lockout_expires_at: datetime,
        ip_address: str | None,
    ) -> None:
        logger.info(
            "Dispatching account lockout notice",
            extra={
                "email": email,
                "lockout_expires_at": lockout_expires_at.isoformat(),
                "ip_address": ip_address,
            },
        )

    async def send_unlock_notice(self, *, email: str) -> None:
        logger.info("Dispatching account unlock notice", extra={"email": email})

    async def send_refresh_token_reuse_alert(
        self,
        *,
        email: str,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        logger.info(
            "Dispatching refresh token reuse alert",
            extra={"email": email, "ip_address": ip_address, "user_agent": user_agent},
        )


async def deliver_safely(notification: Awaitable[None], *, kind: str) -> bool:
    """Await ``notification`` and swallow any delivery failure."""

    try:
        await notification
    except Exception:
        logger.exception("Failed to deliver %s notification", kind)
        return False
    return True


__all__ = ["NotificationDispatcher", "deliver_safely"]
