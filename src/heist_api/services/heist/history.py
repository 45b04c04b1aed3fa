"""Read-only history and aggregate stats over heist outcome records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from heist_api.core.time import ensure_aware
from heist_api.models.heist import Heist, HeistStatus

HistoryRole = Literal["attacker", "victim", "both"]

DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 100


@dataclass
class HeistHistoryEntry:
    id: UUID
    attacker_id: UUID
    victim_id: UUID
    points_stolen: int
    status: HeistStatus
    created_at: datetime
    role: Literal["attacker", "victim"]


@dataclass
class AttackerStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    total_points_stolen: int = 0


@dataclass
class VictimStats:
    total: int = 0
    total_points_lost: int = 0


@dataclass
class HeistStats:
    as_attacker: AttackerStats
    as_victim: VictimStats


class HeistHistoryReader:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def history(
        self,
        user_id: UUID,
        *,
        role: HistoryRole = "both",
        status: HeistStatus | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
    ) -> list[HeistHistoryEntry]:
        """Newest-first outcome records involving the user, tagged with the user's role."""

        if role == "attacker":
            participant = Heist.attacker_id == user_id
        elif role == "victim":
            participant = Heist.victim_id == user_id
        else:
            participant = or_(Heist.attacker_id == user_id, Heist.victim_id == user_id)

        stmt = select(Heist).where(participant)
        if status is not None:
            stmt = stmt.where(Heist.status == status)
        stmt = (
            stmt.order_by(Heist.created_at.desc(), Heist.id.desc())
            .limit(max(1, min(limit, MAX_HISTORY_LIMIT)))
            .offset(max(offset, 0))
        )
        rows = (await self._db.execute(stmt)).scalars().all()
        return [
            HeistHistoryEntry(
                id=row.id,
                attacker_id=row.attacker_id,
                victim_id=row.victim_id,
                points_stolen=int(row.points_stolen or 0),
                status=row.status,
                created_at=ensure_aware(row.created_at),
                role="attacker" if row.attacker_id == user_id and role != "victim" else "victim",
            )
            for row in rows
        ]

    async def stats(self, user_id: UUID) -> HeistStats:
        attacker_stmt = (
            select(Heist.status, func.count(Heist.id), func.coalesce(func.sum(Heist.points_stolen), 0))
            .where(Heist.attacker_id == user_id)
            .group_by(Heist.status)
        )
        attacker = AttackerStats()
        for status, count, points in (await self._db.execute(attacker_stmt)).all():
            attacker.total += int(count)
            if status == HeistStatus.SUCCESS:
                attacker.successful = int(count)
                attacker.total_points_stolen = int(points or 0)
        attacker.failed = attacker.total - attacker.successful

        victim_stmt = select(func.count(Heist.id), func.coalesce(func.sum(Heist.points_stolen), 0)).where(
            Heist.victim_id == user_id,
            Heist.status == HeistStatus.SUCCESS,
        )
        count, points = (await self._db.execute(victim_stmt)).one()
        return HeistStats(
            as_attacker=attacker,
            as_victim=VictimStats(total=int(count or 0), total_points_lost=int(points or 0)),
        )
