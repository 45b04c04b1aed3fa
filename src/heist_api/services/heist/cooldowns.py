"""Attacker cooldown and victim protection windows."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.time import ensure_aware, local_midnight_utc, utcnow
from heist_api.models.heist import Heist, HeistStatus

from .config import HeistConfig


@dataclass
class CooldownStatus:
    active: bool
    remaining: timedelta
    available_at: datetime | None

    @property
    def remaining_ms(self) -> int:
        return int(self.remaining.total_seconds() * 1000)

    @classmethod
    def inactive(cls) -> "CooldownStatus":
        return cls(active=False, remaining=timedelta(0), available_at=None)


@dataclass
class CooldownInfo:
    attacker: CooldownStatus
    victim: CooldownStatus
    heists_today: int
    max_heists_per_day: int


class CooldownTracker:
    """Derive time windows from the outcome record history.

    Every call is a live query: nothing is cached between calls because the
    windows decide whether a transfer may proceed.
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
        self._clock = clock

    async def _latest_success(self, column, user_id: UUID) -> datetime | None:  # noqa: ANN001
        stmt = select(func.max(Heist.created_at)).where(
            column == user_id,
            Heist.status == HeistStatus.SUCCESS,
        )
        result = await self._db.execute(stmt)
        value = result.scalar_one_or_none()
        return ensure_aware(value) if value is not None else None

    async def last_successful_attack(self, user_id: UUID) -> datetime | None:
        return await self._latest_success(Heist.attacker_id, user_id)

    async def last_successful_victimization(self, user_id: UUID) -> datetime | None:
        return await self._latest_success(Heist.victim_id, user_id)

    def _window(self, last_event: datetime | None, length: timedelta) -> CooldownStatus:
        if last_event is None or length <= timedelta(0):
            return CooldownStatus.inactive()
        available_at = last_event + length
        now = ensure_aware(self._clock())
        if now >= available_at:
            return CooldownStatus.inactive()
        return CooldownStatus(active=True, remaining=available_at - now, available_at=available_at)

    async def attacker_cooldown(self, user_id: UUID) -> CooldownStatus:
        last_attack = await self.last_successful_attack(user_id)
        return self._window(last_attack, self._config.attacker_cooldown)

    async def victim_protection(self, user_id: UUID) -> CooldownStatus:
        last_victimized = await self.last_successful_victimization(user_id)
        return self._window(last_victimized, self._config.victim_protection)

    async def heists_today(self, user_id: UUID) -> int:
        """Successful attacks since the start of the server-local calendar day."""

        since = local_midnight_utc(self._clock())
        stmt = select(func.count(Heist.id)).where(
            Heist.attacker_id == user_id,
            Heist.status == HeistStatus.SUCCESS,
            Heist.created_at >= since,
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def has_exceeded_daily_limit(self, user_id: UUID) -> bool:
        return await self.heists_today(user_id) >= self._config.max_heists_per_day

    async def cooldown_info(self, user_id: UUID) -> CooldownInfo:
        attacker = await self.attacker_cooldown(user_id)
        victim = await self.victim_protection(user_id)
        today = await self.heists_today(user_id)
        return CooldownInfo(
            attacker=attacker,
            victim=victim,
            heists_today=today,
            max_heists_per_day=self._config.max_heists_per_day,
        )
