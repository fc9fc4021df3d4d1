"""Per-account failed attempt counting and progressive lockout windows."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import LoginAttempt, User
from .config import LockoutSettings, settings
from .logging import get_logger


logger = get_logger("authgate.lockout")

Timeframe = Literal["hour", "day", "week"]

TIMEFRAMES: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
}

_PROGRESSIVE_LOOKBACK = timedelta(hours=24)


def ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class LockoutStatus:
    """Derived lockout window for one account."""

    is_locked: bool
    attempts_remaining: int
    lockout_expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class FailureOutcome:
    status: LockoutStatus
    failed_attempt_count: int
    lockout_triggered: bool


@dataclass(frozen=True, slots=True)
class UnlockResult:
    success: bool
    message: str
    user: User | None = None


class LockoutTracker:
    """Track failed attempts and lock accounts with progressive backoff.

    All counter changes are issued as single conditional ``UPDATE`` statements
    so that concurrent failures for one account can never both miss the
    threshold.  Nothing here commits; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        config: LockoutSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._config = config or settings.lockout
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def max_attempts(self) -> int:
        return self._config.max_attempts

    async def _prior_lockouts(self, user_id: int, now: datetime) -> int:
        count = await self._session.scalar(
            select(func.count())
            .select_from(LoginAttempt)
            .where(
                LoginAttempt.user_id == user_id,
                LoginAttempt.lockout_triggered.is_(True),
                LoginAttempt.created_at >= now - _PROGRESSIVE_LOOKBACK,
            )
        )
        return int(count or 0)

    async def lockout_duration(self, user_id: int, *, now: datetime | None = None) -> timedelta:
        """Duration of the next lockout: ``base * 2 ** prior_lockouts``, capped."""

        base = timedelta(seconds=self._config.base_duration_seconds)
        if not self._config.progressive:
            return base
        prior = await self._prior_lockouts(user_id, now or self._now())
        cap = timedelta(seconds=self._config.max_duration_seconds)
        # Avoid huge exponents once the cap is certainly reached.
        if prior >= 32:
            return cap
        return min(base * (2**prior), cap)

    async def _heal_if_lapsed(self, user: User, now: datetime) -> bool:
        expires_at = ensure_aware(user.lockout_expires_at)
        if expires_at is None or expires_at > now:
            return False
        await self._session.execute(
            update(User)
            .where(User.id == user.id, User.lockout_expires_at.is_not(None), User.lockout_expires_at <= now)
            .values(
                failed_attempt_count=0,
                last_failed_attempt_at=None,
                locked_at=None,
                lockout_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(user)
        logger.info("lockout_expired", user_id=user.id)
        return True

    def _effective_failures(self, user: User, now: datetime) -> int:
        last_failed = ensure_aware(user.last_failed_attempt_at)
        if last_failed is None:
            return 0
        if last_failed <= now - timedelta(seconds=self._config.attempt_window_seconds):
            return 0
        return int(user.failed_attempt_count or 0)

    async def status(self, user: User) -> LockoutStatus:
        """Return the lockout window for ``user``, clearing a lapsed lock on the way."""

        now = self._now()
        if await self._heal_if_lapsed(user, now):
            return LockoutStatus(is_locked=False, attempts_remaining=self.max_attempts)

        expires_at = ensure_aware(user.lockout_expires_at)
        if expires_at is not None and expires_at > now:
            return LockoutStatus(is_locked=True, attempts_remaining=0, lockout_expires_at=expires_at)

        remaining = max(0, self.max_attempts - self._effective_failures(user, now))
        return LockoutStatus(is_locked=False, attempts_remaining=remaining)

    async def status_for_email(self, email: str) -> LockoutStatus:
        """Public lock check that never reveals whether ``email`` exists.

        Unknown and unlocked accounts both report the full attempt budget.
        """

        user = await self._session.scalar(
            select(User)
            .where(func.lower(User.email) == email.strip().lower())
            .execution_options(populate_existing=True)
        )
        if user is None:
            return LockoutStatus(is_locked=False, attempts_remaining=self.max_attempts)
        current = await self.status(user)
        if current.is_locked:
            return current
        return LockoutStatus(is_locked=False, attempts_remaining=self.max_attempts)

    async def record_failure(self, user: User) -> FailureOutcome:
        """Atomically count a failed attempt and lock the account at the threshold."""

        now = self._now()
        duration = await self.lockout_duration(user.id, now=now)
        window_start = now - timedelta(seconds=self._config.attempt_window_seconds)

        new_count = case(
            (
                and_(
                    User.lockout_expires_at.is_(None),
                    User.last_failed_attempt_at.is_not(None),
                    User.last_failed_attempt_at > window_start,
                ),
                User.failed_attempt_count + 1,
            ),
            else_=1,
        )
        triggers = new_count >= self.max_attempts
        result = await self._session.execute(
            update(User)
            .where(
                User.id == user.id,
                or_(User.lockout_expires_at.is_(None), User.lockout_expires_at <= now),
            )
            .values(
                failed_attempt_count=new_count,
                last_failed_attempt_at=now,
                locked_at=case((triggers, now), else_=None),
                lockout_expires_at=case((triggers, now + duration), else_=None),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(user)
        expires_at = ensure_aware(user.lockout_expires_at)

        if not result.rowcount:
            # Another request locked the account first.
            return FailureOutcome(
                status=LockoutStatus(is_locked=True, attempts_remaining=0, lockout_expires_at=expires_at),
                failed_attempt_count=int(user.failed_attempt_count or 0),
                lockout_triggered=False,
            )

        count = int(user.failed_attempt_count or 0)
        # Rows that were already locked are excluded above, so any expiry now present was set here.
        locked_now = expires_at is not None
        if locked_now:
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=count,
                lockout_expires_at=expires_at.isoformat(),
                duration_seconds=int(duration.total_seconds()),
            )
            status = LockoutStatus(is_locked=True, attempts_remaining=0, lockout_expires_at=expires_at)
        else:
            status = LockoutStatus(is_locked=False, attempts_remaining=max(0, self.max_attempts - count))
        return FailureOutcome(status=status, failed_attempt_count=count, lockout_triggered=locked_now)

    async def reset(self, user: User) -> None:
        """Clear counters after a successful verification."""

        await self._session.execute(
            update(User)
            .where(User.id == user.id)
            .values(
                failed_attempt_count=0,
                last_failed_attempt_at=None,
                locked_at=None,
                lockout_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(user)

    async def unlock(self, email: str) -> UnlockResult:
        """Administrative unlock that clears counters out of band."""

        user = await self._session.scalar(
            select(User)
            .where(func.lower(User.email) == email.strip().lower())
            .execution_options(populate_existing=True)
        )
        if user is None:
            return UnlockResult(success=False, message="User not found")
        if user.locked_at is None:
            return UnlockResult(success=False, message="Account is not locked", user=user)

        await self.reset(user)
        logger.info("account_unlocked", user_id=user.id)
        return UnlockResult(success=True, message="Account unlocked successfully", user=user)

    async def list_locked(self) -> list[User]:
        now = self._now()
        result = await self._session.execute(
            select(User)
            .where(User.locked_at.is_not(None), User.lockout_expires_at > now)
            .order_by(User.lockout_expires_at.asc())
        )
        return list(result.scalars())

    async def count_locked(self) -> int:
        now = self._now()
        count = await self._session.scalar(
            select(func.count())
            .select_from(User)
            .where(User.locked_at.is_not(None), User.lockout_expires_at > now)
        )
        return int(count or 0)

    async def statistics(self, timeframe: Timeframe = "day") -> dict[str, object]:
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe: {timeframe}")
        since = self._now() - TIMEFRAMES[timeframe]

        failed = await self._session.scalar(
            select(func.count())
            .select_from(LoginAttempt)
            .where(LoginAttempt.success.is_(False), LoginAttempt.created_at >= since)
        )
        lockouts = await self._session.scalar(
            select(func.count())
            .select_from(LoginAttempt)
            .where(LoginAttempt.lockout_triggered.is_(True), LoginAttempt.created_at >= since)
        )
        unique_addresses = await self._session.scalar(
            select(func.count(func.distinct(LoginAttempt.ip_address))).where(
                LoginAttempt.success.is_(False), LoginAttempt.created_at >= since
            )
        )
        return {
            "timeframe": timeframe,
            "failed_attempts": int(failed or 0),
            "lockouts": int(lockouts or 0),
            "unique_addresses": int(unique_addresses or 0),
            "since": since,
        }


__all__ = [
    "FailureOutcome",
    "LockoutStatus",
    "LockoutTracker",
    "TIMEFRAMES",
    "Timeframe",
    "UnlockResult",
    "ensure_aware",
]
