"""Ordered eligibility chain for heist attempts."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.time import utcnow
from heist_api.models.user import User

from .config import HeistConfig, calculate_points_to_steal
from .cooldowns import CooldownTracker
from .tokens import TokenLedger

FEATURE_DISABLED = "FEATURE_DISABLED"
INVALID_TARGET = "INVALID_TARGET"
INSUFFICIENT_VICTIM_POINTS = "INSUFFICIENT_VICTIM_POINTS"
INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
TARGET_PROTECTED = "TARGET_PROTECTED"
DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
SHIELD_BLOCKED = "SHIELD_BLOCKED"
EXECUTION_ERROR = "EXECUTION_ERROR"


@dataclass
class EligibilityResult:
    eligible: bool
    code: str | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "EligibilityResult":
        return cls(eligible=True)

    @classmethod
    def fail(cls, code: str, reason: str, **details: Any) -> "EligibilityResult":
        return cls(eligible=False, code=code, reason=reason, details=details)


@dataclass
class EligibilityBreakdown:
    """All seven checks evaluated independently, in chain order."""

    checks: dict[str, bool]
    eligible: bool
    first_failure: EligibilityResult | None
    potential_steal: int | None


CHECK_ORDER = (
    "featureEnabled",
    "notSelfTarget",
    "victimHasPoints",
    "hasTokens",
    "notOnCooldown",
    "targetNotProtected",
    "underDailyLimit",
)


class EligibilityEvaluator:
    """Runs the eligibility chain against the state visible through ``db_session``.

    Outside a transaction the answer is advisory. The executor runs the same
    chain on its transaction's session before mutating anything.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        config: HeistConfig,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db_session
        self._config = config
        self._tokens = TokenLedger(db_session, config=config, clock=clock)
        self._cooldowns = CooldownTracker(db_session, config, clock=clock)

    async def _victim_balance(self, victim_id: UUID) -> int | None:
        stmt = select(User.points_balance).where(User.id == victim_id)
        result = await self._db.execute(stmt)
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else None

    async def check_enabled(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        if not self._config.enabled:
            return EligibilityResult.fail(FEATURE_DISABLED, "Heist feature is currently disabled")
        return EligibilityResult.ok()

    async def check_not_self(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        if attacker_id == victim_id:
            return EligibilityResult.fail(INVALID_TARGET, "You cannot rob yourself")
        return EligibilityResult.ok()

    async def check_victim(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        balance = await self._victim_balance(victim_id)
        if balance is None:
            return EligibilityResult.fail(INVALID_TARGET, "Target user not found")
        if balance < self._config.min_victim_points:
            return EligibilityResult.fail(
                INSUFFICIENT_VICTIM_POINTS,
                f"Target must have at least {self._config.min_victim_points} points",
                victimPoints=balance,
                required=self._config.min_victim_points,
            )
        return EligibilityResult.ok()

    async def check_tokens(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        if not await self._tokens.has_tokens(attacker_id, self._config.token_cost):
            balance = await self._tokens.get_balance(attacker_id)
            return EligibilityResult.fail(
                INSUFFICIENT_TOKENS,
                "You need at least one heist token. Earn tokens by referring friends.",
                tokensAvailable=balance.balance,
                tokensRequired=self._config.token_cost,
            )
        return EligibilityResult.ok()

    async def check_cooldown(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        status = await self._cooldowns.attacker_cooldown(attacker_id)
        if status.active:
            return EligibilityResult.fail(
                COOLDOWN_ACTIVE,
                f"You can attack again in {_format_hours(status.remaining_ms)}",
                remainingMs=status.remaining_ms,
                availableAt=status.available_at.isoformat() if status.available_at else None,
            )
        return EligibilityResult.ok()

    async def check_protection(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        status = await self._cooldowns.victim_protection(victim_id)
        if status.active:
            return EligibilityResult.fail(
                TARGET_PROTECTED,
                f"This user is protected for {_format_hours(status.remaining_ms)}",
                remainingMs=status.remaining_ms,
                availableAt=status.available_at.isoformat() if status.available_at else None,
            )
        return EligibilityResult.ok()

    async def check_daily_limit(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        count = await self._cooldowns.heists_today(attacker_id)
        if count >= self._config.max_heists_per_day:
            return EligibilityResult.fail(
                DAILY_LIMIT_EXCEEDED,
                f"Daily heist limit reached ({self._config.max_heists_per_day} per day)",
                heistsToday=count,
                maxPerDay=self._config.max_heists_per_day,
            )
        return EligibilityResult.ok()

    def _chain(self) -> list[Callable[[UUID, UUID], Awaitable[EligibilityResult]]]:
        return [
            self.check_enabled,
            self.check_not_self,
            self.check_victim,
            self.check_tokens,
            self.check_cooldown,
            self.check_protection,
            self.check_daily_limit,
        ]

    async def evaluate(self, attacker_id: UUID, victim_id: UUID) -> EligibilityResult:
        """Return the first failing check, or an eligible result."""

        for check in self._chain():
            result = await check(attacker_id, victim_id)
            if not result.eligible:
                return result
        return EligibilityResult.ok()

    async def breakdown(self, attacker_id: UUID, victim_id: UUID) -> EligibilityBreakdown:
        checks: dict[str, bool] = {}
        first_failure: EligibilityResult | None = None
        for name, check in zip(CHECK_ORDER, self._chain()):
            result = await check(attacker_id, victim_id)
            checks[name] = result.eligible
            if not result.eligible and first_failure is None:
                first_failure = result

        potential_steal: int | None = None
        if first_failure is None:
            victim_balance = await self._victim_balance(victim_id)
            potential_steal = calculate_points_to_steal(victim_balance or 0, self._config)

        return EligibilityBreakdown(
            checks=checks,
            eligible=first_failure is None,
            first_failure=first_failure,
            potential_steal=potential_steal,
        )


def _format_hours(remaining_ms: int) -> str:
    hours, remainder = divmod(max(remaining_ms, 0) // 60000, 60)
    if hours:
        return f"{hours}h {remainder}m"
    return f"{remainder}m"
