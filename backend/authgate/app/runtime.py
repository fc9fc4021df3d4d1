"""Process-wide security state with an explicit lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from .blocklist import AddressBlocklist
from .config import Settings, settings as default_settings
from .logging import get_logger
from .maintenance import MaintenanceSweeper
from .rate_limit import RateLimiter, build_rules
from .storage import CacheBackend, Clock, build_cache


logger = get_logger("authgate.runtime")


@dataclass
class SecurityRuntime:
    """Cache, rate limiter, blocklist and sweeper shared by every request.

    Built once per application, started by the lifespan and closed on
    shutdown.  Losing it only resets throttling state.
    """

    cache: CacheBackend
    rate_limiter: RateLimiter
    blocklist: AddressBlocklist
    sweeper: MaintenanceSweeper | None = None

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        *,
        clock: Clock | None = None,
    ) -> "SecurityRuntime":
        cfg = config or default_settings
        cache = build_cache(cfg.redis_url, clock=clock)
        rate_limiter = RateLimiter(
            cache=cache,
            rules=build_rules(cfg.rate_limit),
            namespace=cfg.rate_limit.namespace,
        )
        blocklist = AddressBlocklist(
            cache=cache,
            default_duration_seconds=cfg.threats.block_duration_seconds,
            namespace=f"{cfg.rate_limit.namespace}:block",
        )
        return cls(cache=cache, rate_limiter=rate_limiter, blocklist=blocklist)

    def attach_sweeper(self, session_factory: Callable[[], AsyncSession], config: Settings | None = None) -> None:
        cfg = config or default_settings
        self.sweeper = MaintenanceSweeper(
            session_factory=session_factory,
            cache=self.cache,
            config=cfg.maintenance,
        )

    async def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()
        logger.info("security_runtime_started", cache=type(self.cache).__name__)

    async def aclose(self) -> None:
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.cache.close()
        logger.info("security_runtime_closed")


__all__ = ["SecurityRuntime"]
