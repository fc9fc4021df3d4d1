"""Helpers for issuing and consuming single-use user tokens."""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import models as db_models
from .lockout import ensure_aware
from .security import hash_token


class TokenService:
    """Issue and consume single-use tokens associated with a user.

    Consumption is a compare-and-set on ``consumed_at`` so a token can finalize
    at most one operation even under concurrent requests.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def issue(
        self,
        *,
        user_id: int,
        purpose: db_models.UserTokenPurpose,
        ttl_seconds: int,
        token: str | None = None,
        expires_at: datetime | None = None,
        supersede: bool = True,
    ) -> Tuple[db_models.UserToken, str]:
        """Persist a token for ``user_id``; a random one is generated unless given."""

        issued_at = self._now()
        if supersede:
            await self._session.execute(
                update(db_models.UserToken)
                .where(
                    db_models.UserToken.user_id == user_id,
                    db_models.UserToken.purpose == purpose,
                    db_models.UserToken.consumed_at.is_(None),
                )
                .values(consumed_at=issued_at)
                .execution_options(synchronize_session=False)
            )

        raw_token = token or secrets.token_urlsafe(32)
        token_record = db_models.UserToken(
            user_id=user_id,
            purpose=purpose,
            token_hash=hash_token(raw_token),
            expires_at=expires_at or issued_at + timedelta(seconds=int(ttl_seconds)),
        )
        self._session.add(token_record)
        await self._session.flush()
        return token_record, raw_token

    async def peek(
        self,
        *,
        token: str,
        purpose: db_models.UserTokenPurpose,
    ) -> db_models.UserToken | None:
        """Return the live record for ``token`` without consuming it."""

        record = await self._session.scalar(
            select(db_models.UserToken)
            .where(
                db_models.UserToken.token_hash == hash_token(token),
                db_models.UserToken.purpose == purpose,
            )
            .execution_options(populate_existing=True)
        )
        if record is None or record.consumed_at is not None:
            return None
        if ensure_aware(record.expires_at) <= self._now():
            return None
        return record

    async def consume(
        self,
        *,
        token: str,
        purpose: db_models.UserTokenPurpose,
    ) -> db_models.UserToken | None:
        """Mark ``token`` as consumed and return its record, or ``None`` if not live."""

        now = self._now()
        token_hash = hash_token(token)
        result = await self._session.execute(
            update(db_models.UserToken)
            .where(
                db_models.UserToken.token_hash == token_hash,
                db_models.UserToken.purpose == purpose,
                db_models.UserToken.consumed_at.is_(None),
                db_models.UserToken.expires_at > now,
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None

        return await self._session.scalar(
            select(db_models.UserToken)
            .where(db_models.UserToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )


__all__ = ["TokenService"]
