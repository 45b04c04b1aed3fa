"""Heist notifications: post-commit producers and the member inbox."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.time import utcnow
from heist_api.models.heist import HeistNotification, HeistNotificationType


class HeistNotifier(Protocol):
    async def notify_attack_success(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        victim_name: str,
        amount: int,
        heist_id: UUID,
    ) -> None: ...

    async def notify_victim(
        self,
        victim_id: UUID,
        attacker_id: UUID,
        attacker_name: str,
        amount: int,
        heist_id: UUID,
    ) -> None: ...


class HeistNotificationService:
    """Persist heist notifications, each call in its own short transaction."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def _create(
        self,
        *,
        user_id: UUID,
        heist_id: UUID | None,
        notification_type: HeistNotificationType,
        message: str,
        metadata: dict,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                HeistNotification(
                    user_id=user_id,
                    heist_id=heist_id,
                    notification_type=notification_type,
                    message=message,
                    metadata_json=metadata,
                    read=False,
                    created_at=self._clock(),
                )
            )
            await session.commit()
        logger.debug(
            "Heist notification stored",
            user_id=str(user_id),
            notification_type=notification_type.value,
        )

    async def notify_attack_success(
        self,
        attacker_id: UUID,
        victim_id: UUID,
        victim_name: str,
        amount: int,
        heist_id: UUID,
    ) -> None:
        await self._create(
            user_id=attacker_id,
            heist_id=heist_id,
            notification_type=HeistNotificationType.HEIST_SUCCESS,
            message=f"Heist successful! You stole {amount} points from {victim_name}",
            metadata={"victimId": str(victim_id), "victimName": victim_name, "pointsStolen": amount},
        )

    async def notify_victim(
        self,
        victim_id: UUID,
        attacker_id: UUID,
        attacker_name: str,
        amount: int,
        heist_id: UUID,
    ) -> None:
        await self._create(
            user_id=victim_id,
            heist_id=heist_id,
            notification_type=HeistNotificationType.HEIST_VICTIM,
            message=f"{attacker_name} robbed you and stole {amount} points!",
            metadata={"attackerId": str(attacker_id), "attackerName": attacker_name, "pointsStolen": amount},
        )

    async def list_notifications(
        self,
        user_id: UUID,
        *,
        unread_only: bool = False,
        notification_type: HeistNotificationType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[HeistNotification], int]:
        """Return one page of notifications (newest first) and the matching total."""

        filters = [HeistNotification.user_id == user_id]
        if unread_only:
            filters.append(HeistNotification.read.is_(False))
        if notification_type is not None:
            filters.append(HeistNotification.notification_type == notification_type)

        async with self._session_factory() as session:
            stmt = (
                select(HeistNotification)
                .where(*filters)
                .order_by(HeistNotification.created_at.desc())
                .limit(max(1, min(limit, 100)))
                .offset(max(offset, 0))
            )
            rows = list((await session.execute(stmt)).scalars().all())
            total = (
                await session.execute(select(func.count(HeistNotification.id)).where(*filters))
            ).scalar_one()
        return rows, int(total or 0)

    async def unread_count(self, user_id: UUID) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count(HeistNotification.id)).where(
                HeistNotification.user_id == user_id,
                HeistNotification.read.is_(False),
            )
            return int((await session.execute(stmt)).scalar_one() or 0)

    async def mark_read(self, user_id: UUID, notification_ids: Sequence[UUID]) -> int:
        if not notification_ids:
            return 0
        async with self._session_factory() as session:
            stmt = (
                update(HeistNotification)
                .where(
                    HeistNotification.user_id == user_id,
                    HeistNotification.id.in_(list(notification_ids)),
                )
                .values(read=True)
            )
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)

    async def mark_all_read(self, user_id: UUID) -> int:
        async with self._session_factory() as session:
            stmt = (
                update(HeistNotification)
                .where(HeistNotification.user_id == user_id, HeistNotification.read.is_(False))
                .values(read=True)
            )
            result = await session.execute(stmt)
            await session.commit()
        return int(result.rowcount or 0)

    async def purge_read_older_than(self, days: int = 90) -> int:
        cutoff = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            stmt = delete(HeistNotification).where(
                HeistNotification.read.is_(True),
                HeistNotification.created_at < cutoff,
            )
            result = await session.execute(stmt)
            await session.commit()
        removed = int(result.rowcount or 0)
        if removed:
            logger.info("Purged read heist notifications", removed=removed, older_than_days=days)
        return removed
