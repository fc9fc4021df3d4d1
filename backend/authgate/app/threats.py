"""Brute-force detection, address risk scoring and security metrics."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuditEvent, LoginAttempt, SecurityEventSeverity
from .audit import SecurityAction, record_audit_event
from .blocklist import AddressBlocklist
from .config import ThreatSettings, settings
from .lockout import TIMEFRAMES, LockoutTracker, Timeframe
from .logging import get_logger


logger = get_logger("authgate.threats")

_ACTIVITY_WINDOW = timedelta(minutes=15)
_DISTRIBUTED_WINDOW = timedelta(minutes=5)
_HIGH_FREQUENCY_ATTEMPTS = 50
_HIGH_FAILURE_ATTEMPTS = 10
_DISTRIBUTED_ADDRESSES = 20


@dataclass(frozen=True, slots=True)
class ThreatAssessment:
    is_suspicious: bool
    risk_score: int
    reasons: list[str] = field(default_factory=list)
    blocked: bool = False


class ThreatMonitor:
    """Score client addresses from recent attempt density and user agent."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        blocklist: AddressBlocklist,
        config: ThreatSettings | None = None,
    ) -> None:
        self._session = session
        self._blocklist = blocklist
        self._config = config or settings.threats

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def _count_attempts(self, since: datetime, *, address: str | None = None, failed_only: bool = False) -> int:
        stmt = select(func.count()).select_from(LoginAttempt).where(LoginAttempt.created_at >= since)
        if address is not None:
            stmt = stmt.where(LoginAttempt.ip_address == address)
        if failed_only:
            stmt = stmt.where(LoginAttempt.success.is_(False))
        return int(await self._session.scalar(stmt) or 0)

    async def _active_addresses(self, since: datetime) -> int:
        count = await self._session.scalar(
            select(func.count(func.distinct(LoginAttempt.ip_address))).where(LoginAttempt.created_at >= since)
        )
        return int(count or 0)

    def is_suspicious_user_agent(self, user_agent: str | None) -> bool:
        pattern = self._config.suspicious_agent_pattern
        if not user_agent or pattern is None:
            return False
        return pattern.search(user_agent) is not None

    async def detect_brute_force(self, address: str) -> bool:
        """True when ``address`` reached the failure threshold inside the detection window."""

        since = self._now() - timedelta(seconds=self._config.brute_force_window_seconds)
        failures = await self._count_attempts(since, address=address, failed_only=True)
        return failures >= self._config.brute_force_threshold

    async def evaluate_failure(self, address: str, *, user_agent: str | None = None) -> bool:
        """Block ``address`` after a failed login if it now looks like brute force.

        Returns whether the address was blocked.
        """

        if not await self.detect_brute_force(address):
            return False
        if await self._blocklist.is_blocked(address):
            return True
        await self._blocklist.block(
            address,
            reason="brute_force",
            duration_seconds=self._config.block_duration_seconds,
        )
        await record_audit_event(
            self._session,
            action=SecurityAction.BRUTE_FORCE,
            result="blocked",
            severity=SecurityEventSeverity.HIGH,
            ip_address=address,
            user_agent=user_agent,
            metadata={
                "threshold": self._config.brute_force_threshold,
                "window_seconds": self._config.brute_force_window_seconds,
            },
        )
        return True

    async def analyze(self, address: str, user_agent: str | None = None) -> ThreatAssessment:
        now = self._now()
        reasons: list[str] = []
        score = 0

        since = now - _ACTIVITY_WINDOW
        request_count = await self._count_attempts(since, address=address)
        failed_count = await self._count_attempts(since, address=address, failed_only=True)
        if request_count > _HIGH_FREQUENCY_ATTEMPTS:
            score += 30
            reasons.append("High frequency requests from same address")
        if failed_count > _HIGH_FAILURE_ATTEMPTS:
            score += 40
            reasons.append("Multiple failed login attempts")

        if await self._active_addresses(now - _DISTRIBUTED_WINDOW) > _DISTRIBUTED_ADDRESSES:
            score += 20
            reasons.append("High number of active addresses (possible distributed attack)")

        if self.is_suspicious_user_agent(user_agent):
            score += 25
            reasons.append("Suspicious user agent detected")

        suspicious = score >= self._config.suspicious_score
        blocked = False
        if suspicious:
            severity = (
                SecurityEventSeverity.HIGH
                if score >= self._config.block_score
                else SecurityEventSeverity.MEDIUM
            )
            if score >= self._config.block_score:
                await self._blocklist.block(
                    address,
                    reason="suspicious_activity",
                    duration_seconds=self._config.block_duration_seconds,
                )
                blocked = True
            await record_audit_event(
                self._session,
                action=SecurityAction.SUSPICIOUS_ACTIVITY,
                result="blocked" if blocked else "flagged",
                severity=severity,
                ip_address=address,
                user_agent=user_agent,
                metadata={
                    "risk_score": score,
                    "reasons": reasons,
                    "recent_attempts": request_count,
                    "recent_failures": failed_count,
                },
            )
        return ThreatAssessment(is_suspicious=suspicious, risk_score=score, reasons=reasons, blocked=blocked)

    async def suspicious_addresses(self, since: datetime) -> list[str]:
        result = await self._session.execute(
            select(LoginAttempt.ip_address)
            .where(LoginAttempt.success.is_(False), LoginAttempt.created_at >= since)
            .group_by(LoginAttempt.ip_address)
            .having(func.count() > self._config.suspicious_address_failures)
        )
        return [row[0] for row in result.all()]

    async def metrics(self, timeframe: Timeframe = "hour") -> dict[str, object]:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        since = self._now() - TIMEFRAMES[timeframe]

        failed_logins = await self._count_attempts(since, failed_only=True)
        total_attempts = await self._count_attempts(since)
        unique_addresses = await self._session.scalar(
            select(func.count(func.distinct(LoginAttempt.ip_address))).where(LoginAttempt.created_at >= since)
        )
        rate_limit_violations = await self._session.scalar(
            select(func.count())
            .select_from(AuditEvent)
            .where(AuditEvent.action == SecurityAction.RATE_LIMITED, AuditEvent.occurred_at >= since)
        )
        locked_accounts = await LockoutTracker(self._session).count_locked()
        suspicious = await self.suspicious_addresses(since)
        blocked = await self._blocklist.list_blocked()
        unique = int(unique_addresses or 0)

        return {
            "timeframe": timeframe,
            "failed_logins": failed_logins,
            "rate_limit_violations": int(rate_limit_violations or 0),
            "locked_accounts": locked_accounts,
            "suspicious_addresses": len(suspicious),
            "average_attempts_per_address": (total_attempts / unique) if unique else 0.0,
            "blocked_addresses": len(blocked),
        }


__all__ = ["ThreatAssessment", "ThreatMonitor"]
