"""Temporary blocks on client addresses, enforced ahead of every other check."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("authgate.blocklist")


@dataclass(frozen=True, slots=True)
class BlockEntry:
    address: str
    reason: str
    blocked_at: datetime
    expires_at: datetime


class AddressBlocklist:
    """Cache-backed set of blocked addresses; entries expire lazily."""

    def __init__(
        self,
        *,
        cache: CacheBackend,
        default_duration_seconds: int,
        namespace: str = "authgate:block",
    ) -> None:
        if default_duration_seconds < 1:
            raise ValueError("default_duration_seconds must be at least 1")
        self._cache = cache
        self._default_duration = default_duration_seconds
        self._namespace = namespace

    def _make_key(self, address: str) -> str:
        return f"{self._namespace}:{address.strip()}"

    async def block(self, address: str, *, reason: str, duration_seconds: int | None = None) -> BlockEntry:
        duration = int(duration_seconds or self._default_duration)
        now = datetime.now(timezone.utc)
        entry = BlockEntry(
            address=address.strip(),
            reason=reason,
            blocked_at=now,
            expires_at=now + timedelta(seconds=duration),
        )
        payload = {
            "reason": entry.reason,
            "blocked_at": entry.blocked_at.isoformat(),
            "expires_at": entry.expires_at.isoformat(),
        }
        await self._cache.set(self._make_key(address), json.dumps(payload).encode("utf-8"), duration)
        logger.warning(
            "address_blocked",
            ip_address=entry.address,
            reason=reason,
            expires_at=entry.expires_at.isoformat(),
        )
        return entry

    async def get(self, address: str) -> BlockEntry | None:
        raw = await self._cache.get(self._make_key(address))
        if raw is None:
            return None
        try:
            payload = json.loads(raw.decode("utf-8"))
            entry = BlockEntry(
                address=address.strip(),
                reason=str(payload.get("reason", "")),
                blocked_at=datetime.fromisoformat(payload["blocked_at"]),
                expires_at=datetime.fromisoformat(payload["expires_at"]),
            )
        except (ValueError, KeyError, UnicodeDecodeError):
            logger.warning("blocklist_entry_corrupt", ip_address=address)
            await self._cache.delete(self._make_key(address))
            return None
        if entry.expires_at <= datetime.now(timezone.utc):
            await self._cache.delete(self._make_key(address))
            return None
        return entry

    async def is_blocked(self, address: str | None) -> bool:
        if not address:
            return False
        return await self.get(address) is not None

    async def unblock(self, address: str) -> bool:
        existed = await self.get(address) is not None
        await self._cache.delete(self._make_key(address))
        if existed:
            logger.info("address_unblocked", ip_address=address.strip())
        return existed

    async def list_blocked(self) -> list[BlockEntry]:
        prefix = f"{self._namespace}:"
        entries: list[BlockEntry] = []
        for key in await self._cache.keys(prefix):
            entry = await self.get(key[len(prefix):])
            if entry is not None:
                entries.append(entry)
        return entries


__all__ = ["AddressBlocklist", "BlockEntry"]
