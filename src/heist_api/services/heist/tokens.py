"""Attack token ledger."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.time import utcnow
from heist_api.models.heist import HeistNotification, HeistNotificationType, HeistToken

from .config import HeistConfig, get_heist_config
from .errors import InsufficientTokensError


@dataclass
class TokenBalance:
    balance: int
    total_earned: int
    total_spent: int
    last_earned_at: datetime | None
    last_spent_at: datetime | None

    @classmethod
    def empty(cls) -> "TokenBalance":
        return cls(balance=0, total_earned=0, total_spent=0, last_earned_at=None, last_spent_at=None)

    @classmethod
    def from_record(cls, record: HeistToken) -> "TokenBalance":
        return cls(
            balance=int(record.balance or 0),
            total_earned=int(record.total_earned or 0),
            total_spent=int(record.total_spent or 0),
            last_earned_at=record.last_earned_at,
            last_spent_at=record.last_spent_at,
        )


@dataclass
class TokenLeaderboardEntry:
    user_id: UUID
    balance: int
    total_earned: int


class TokenLedger:
    """Reads and mutates per-user attack token balances.

    Every method runs on the session handed to the constructor, so mutations
    join whatever transaction the caller has open on it.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        config: HeistConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db_session
        self._config = config or get_heist_config()
        self._clock = clock

    async def _get_record(self, user_id: UUID, *, for_update: bool = False) -> HeistToken | None:
        stmt = select(HeistToken).where(HeistToken.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance(self, user_id: UUID) -> TokenBalance:
        record = await self._get_record(user_id)
        if record is None:
            return TokenBalance.empty()
        return TokenBalance.from_record(record)

    async def has_tokens(self, user_id: UUID, amount: int = 1) -> bool:
        stmt = select(HeistToken.balance).where(HeistToken.user_id == user_id)
        result = await self._db.execute(stmt)
        balance = result.scalar_one_or_none()
        return balance is not None and int(balance) >= amount

    async def award(self, user_id: UUID, amount: int = 1) -> TokenBalance:
        """Credit tokens, creating the ledger row on first award."""

        if amount <= 0:
            raise ValueError("Token awards require a positive amount")

        now = self._clock()
        record = await self._get_record(user_id, for_update=True)
        if record is None:
            record = HeistToken(
                user_id=user_id,
                balance=amount,
                total_earned=amount,
                total_spent=0,
                last_earned_at=now,
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(record)
            except IntegrityError:
                logger.warning("Detected race when creating heist token record", user_id=str(user_id))
                record = await self._get_record(user_id, for_update=True)
                if record is None:
                    raise
                self._increment_earned(record, amount, now)
        else:
            self._increment_earned(record, amount, now)

        await self._db.flush()
        logger.info("Awarded heist tokens", user_id=str(user_id), amount=amount, balance=record.balance)
        return TokenBalance.from_record(record)

    @staticmethod
    def _increment_earned(record: HeistToken, amount: int, now: datetime) -> None:
        record.balance = int(record.balance or 0) + amount
        record.total_earned = int(record.total_earned or 0) + amount
        record.last_earned_at = now

    async def spend(self, user_id: UUID, amount: int = 1) -> TokenBalance:
        """Debit tokens inside the caller's transaction.

        The row is read with ``FOR UPDATE`` so two concurrent spends for the same
        user serialize instead of both observing the same balance.
        """

        record = await self._get_record(user_id, for_update=True)
        available = int(record.balance or 0) if record is not None else 0
        if record is None or available < amount:
            raise InsufficientTokensError(user_id, required=amount, available=available)

        record.balance = available - amount
        record.total_spent = int(record.total_spent or 0) + amount
        record.last_spent_at = self._clock()
        await self._db.flush()
        logger.debug("Spent heist tokens", user_id=str(user_id), amount=amount, balance=record.balance)
        return TokenBalance.from_record(record)

    async def award_for_referral(self, user_id: UUID, referral_name: str | None = None) -> TokenBalance:
        """Grant the referral token allowance and queue a TOKEN_EARNED notification."""

        amount = self._config.tokens_per_referral
        balance = await self.award(user_id, amount)
        if self._config.notifications_enabled:
            who = referral_name or "A friend"
            noun = "token" if amount == 1 else "tokens"
            self._db.add(
                HeistNotification(
                    user_id=user_id,
                    notification_type=HeistNotificationType.TOKEN_EARNED,
                    message=f"{who} joined with your referral. You earned {amount} heist {noun}.",
                    metadata_json={
                        "tokensEarned": amount,
                        "referralName": referral_name,
                        "newBalance": balance.balance,
                    },
                    created_at=self._clock(),
                )
            )
            await self._db.flush()
        return balance

    async def leaderboard(self, limit: int = 10) -> list[TokenLeaderboardEntry]:
        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(HeistToken.user_id, HeistToken.balance, HeistToken.total_earned)
            .where(HeistToken.balance > 0)
            .order_by(HeistToken.balance.desc(), HeistToken.total_earned.desc())
            .limit(bounded_limit)
        )
        result = await self._db.execute(stmt)
        return [
            TokenLeaderboardEntry(user_id=user_id, balance=int(balance), total_earned=int(total_earned))
            for user_id, balance, total_earned in result.all()
        ]
