"""Fixed-window request budgets per client address and endpoint class."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping

from .config import RateLimitSettings, settings
from .errors import RateLimited
from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("authgate.rate_limit")


class RateLimitClass(str, enum.Enum):
    """Endpoint classes with independent budgets."""

    GLOBAL = "global"
    AUTH = "auth"
    LOGIN = "login"
    REGISTER = "register"
    PASSWORD_RESET = "password-reset"
    SENSITIVE = "sensitive"


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of one budget check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    @property
    def retry_after(self) -> int:
        seconds = (self.reset_at - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(seconds + 0.999))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }


def build_rules(config: RateLimitSettings | None = None) -> dict[RateLimitClass, RateLimitRule]:
    cfg = config or settings.rate_limit
    return {
        RateLimitClass.GLOBAL: RateLimitRule(cfg.global_limit, cfg.global_window_seconds),
        RateLimitClass.AUTH: RateLimitRule(cfg.auth_limit, cfg.auth_window_seconds),
        RateLimitClass.LOGIN: RateLimitRule(cfg.login_limit, cfg.login_window_seconds),
        RateLimitClass.REGISTER: RateLimitRule(cfg.register_limit, cfg.register_window_seconds),
        RateLimitClass.PASSWORD_RESET: RateLimitRule(
            cfg.password_reset_limit, cfg.password_reset_window_seconds
        ),
        RateLimitClass.SENSITIVE: RateLimitRule(cfg.sensitive_limit, cfg.sensitive_window_seconds),
    }


class RateLimiter:
    """Count requests per ``(class, address)`` and enforce a hard ceiling.

    Each key holds a counter that expires ``window_seconds`` after the first
    request in the window.  Exactly ``limit`` requests are allowed per window.
    """

    def __init__(
        self,
        *,
        cache: CacheBackend,
        rules: Mapping[RateLimitClass, RateLimitRule] | None = None,
        namespace: str = "authgate:rl",
    ) -> None:
        resolved = dict(rules or build_rules())
        for rate_class, rule in resolved.items():
            if rule.limit < 1:
                raise ValueError(f"limit for {rate_class.value} must be at least 1")
            if rule.window_seconds < 1:
                raise ValueError(f"window for {rate_class.value} must be at least 1 second")
        self._cache = cache
        self._rules = resolved
        self._namespace = namespace

    @staticmethod
    def _normalise_address(address: str | None) -> str:
        if not address:
            return "unknown"
        cleaned = address.strip()
        return cleaned or "unknown"

    def _make_key(self, rate_class: RateLimitClass, address: str) -> str:
        return f"{self._namespace}:{rate_class.value}:{address}"

    def rule_for(self, rate_class: RateLimitClass) -> RateLimitRule:
        return self._rules[rate_class]

    @property
    def rules(self) -> dict[RateLimitClass, RateLimitRule]:
        return dict(self._rules)

    async def check(self, address: str | None, rate_class: RateLimitClass) -> RateLimitDecision:
        """Consume one unit of budget and report whether the request may proceed."""

        rule = self._rules[rate_class]
        key = self._make_key(rate_class, self._normalise_address(address))
        count, ttl_remaining = await self._cache.incr(key, rule.window_seconds)
        reset_at = datetime.now(timezone.utc) + timedelta(seconds=max(ttl_remaining, 1))
        allowed = count <= rule.limit
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                rate_class=rate_class.value,
                ip_address=address,
                count=count,
                limit=rule.limit,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=rule.limit,
            remaining=max(0, rule.limit - count),
            reset_at=reset_at,
        )

    async def enforce(self, address: str | None, rate_class: RateLimitClass) -> RateLimitDecision:
        decision = await self.check(address, rate_class)
        if not decision.allowed:
            raise RateLimited(
                limit=decision.limit,
                reset_at=decision.reset_at,
                retry_after=decision.retry_after,
                reason=f"rate_limited:{rate_class.value}",
            )
        return decision

    async def reset(self, address: str | None, rate_class: RateLimitClass) -> None:
        await self._cache.delete(self._make_key(rate_class, self._normalise_address(address)))

    async def purge_expired(self) -> int:
        return await self._cache.purge_expired()


__all__ = [
    "RateLimitClass",
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
    "build_rules",
]
