"""Point balance collaborator used by the heist engine."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.models.points import PointEventType, UserPointEvent
from heist_api.models.user import User


class NegativeBalanceError(ValueError):
    """Raised when a debit would drive an account below zero."""

    def __init__(self, user_id: UUID, balance: int, delta: int) -> None:
        super().__init__(f"Debit of {-delta} exceeds balance {balance} for user {user_id}")
        self.user_id = user_id
        self.balance = balance
        self.delta = delta


class PointAccountService:
    """Reads and mutates the point balance stored on the user account."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def lock_account(self, user_id: UUID) -> User | None:
        """Load the account row for update within the caller's transaction."""

        stmt = select(User).where(User.id == user_id).with_for_update()
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_accounts(self, *user_ids: UUID) -> dict[UUID, User | None]:
        """Lock several accounts, always in the same id order."""

        locked: dict[UUID, User | None] = {}
        for user_id in sorted(set(user_ids), key=str):
            locked[user_id] = await self.lock_account(user_id)
        return locked

    async def read_balance(self, user_id: UUID) -> int | None:
        stmt = select(User.points_balance).where(User.id == user_id)
        result = await self._db.execute(stmt)
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else None

    async def credit_points(self, user_id: UUID, delta: int) -> int:
        """Apply a signed delta and return the new balance."""

        account = await self.lock_account(user_id)
        if account is None:
            raise LookupError(f"Account {user_id} not found")

        current = int(account.points_balance or 0)
        new_balance = current + delta
        if new_balance < 0:
            raise NegativeBalanceError(user_id, current, delta)

        account.points_balance = new_balance
        await self._db.flush()
        logger.debug("Credited points", user_id=str(user_id), delta=delta, balance=new_balance)
        return new_balance

    async def record_event(
        self,
        user_id: UUID,
        *,
        points: int,
        event_type: PointEventType,
        heist_id: UUID | None = None,
    ) -> UserPointEvent:
        event = UserPointEvent(
            user_id=user_id,
            points=points,
            event_type=event_type,
            heist_id=heist_id,
        )
        self._db.add(event)
        await self._db.flush()
        return event
