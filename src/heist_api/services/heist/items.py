"""Modifier items: selection, effect pipeline, usage recording and purchases."""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from heist_api.core.time import ensure_aware, utcnow
from heist_api.models.heist import (
    DEFENSIVE_ITEM_TYPES,
    OFFENSIVE_ITEM_TYPES,
    HeistItem,
    HeistItemEffectType,
    HeistItemUsage,
    UserHeistItem,
)
from heist_api.models.user import User

from .config import HeistConfig, as_decimal, floor_points
from .effects import BlockEffect, BonusEffect, BoostEffect, ItemEffect, ReductionEffect
from .errors import ItemPurchaseError

ItemRole = Literal["attacker", "victim"]


@dataclass
class ActiveItem:
    """An owned instance eligible for selection, flattened with its catalog entry."""

    user_item_id: UUID
    user_id: UUID
    item_id: UUID
    name: str
    effect_type: HeistItemEffectType
    effect_value: float
    purchased_at: datetime
    expires_at: datetime | None = None
    uses_remaining: int | None = None


@dataclass
class ItemUsage:
    user_item_id: UUID
    user_id: UUID
    item_id: UUID
    item_name: str
    effect: ItemEffect


@dataclass
class ItemEffectResult:
    final_amount: int
    items_used: list[ItemUsage] = field(default_factory=list)
    shield_blocked: bool = False
    effective_percentage: float = 0.0


_FAR_FUTURE = datetime.max


def _strongest(items: Sequence[ActiveItem], effect_type: HeistItemEffectType) -> ActiveItem | None:
    """Highest effect value wins; ties go to the soonest expiring, then oldest instance."""

    candidates = [item for item in items if item.effect_type == effect_type and item.effect_value > 0]
    if not candidates:
        return None

    def _rank(item: ActiveItem) -> tuple:
        expires = ensure_aware(item.expires_at).replace(tzinfo=None) if item.expires_at else _FAR_FUTURE
        purchased = ensure_aware(item.purchased_at).replace(tzinfo=None)
        return (-item.effect_value, expires, purchased)

    return min(candidates, key=_rank)


def _usage(item: ActiveItem, effect: ItemEffect) -> ItemUsage:
    return ItemUsage(
        user_item_id=item.user_item_id,
        user_id=item.user_id,
        item_id=item.item_id,
        item_name=item.name,
        effect=effect,
    )


def apply_protection_floor(amount: int, victim_balance: int, config: HeistConfig) -> int:
    """Clamp so the victim keeps ``min_protection_percentage`` and the per-heist cap holds."""

    protected = floor_points(Decimal(victim_balance) * as_decimal(config.min_protection_percentage))
    return max(min(amount, victim_balance - protected, config.max_points_per_heist), 0)


def apply_item_effects(
    *,
    victim_balance: int,
    base_amount: int,
    config: HeistConfig,
    attacker_items: Sequence[ActiveItem],
    victim_items: Sequence[ActiveItem],
    rng: random.Random | None = None,
) -> ItemEffectResult:
    """Apply boost, bonus, block, reduction and the protection floor in that order.

    Only one item per effect type applies. A block item is reported as used
    only when its roll actually blocks the heist.
    """

    rng = rng or random.Random()
    base_percentage = as_decimal(config.steal_percentage)
    effective_percentage = base_percentage
    amount = base_amount
    items_used: list[ItemUsage] = []

    boost = _strongest(attacker_items, HeistItemEffectType.INCREASE_STEAL_PERCENTAGE)
    if boost is not None:
        effective_percentage = base_percentage * (1 + as_decimal(boost.effect_value) / 100)
        amount = floor_points(Decimal(victim_balance) * effective_percentage)
        items_used.append(
            _usage(boost, BoostEffect(boost=boost.effect_value, new_percentage=float(effective_percentage)))
        )

    bonus = _strongest(attacker_items, HeistItemEffectType.INCREASE_STEAL_BONUS)
    if bonus is not None:
        bonus_points = floor_points(as_decimal(bonus.effect_value))
        if bonus_points > 0:
            amount += bonus_points
            items_used.append(_usage(bonus, BonusEffect(bonus=bonus_points)))

    shield = _strongest(victim_items, HeistItemEffectType.BLOCK_THEFT_CHANCE)
    if shield is not None:
        roll = rng.random() * 100
        if roll < shield.effect_value:
            items_used.append(_usage(shield, BlockEffect(block_chance=shield.effect_value)))
            return ItemEffectResult(
                final_amount=0,
                items_used=items_used,
                shield_blocked=True,
                effective_percentage=float(effective_percentage),
            )

    reduction = _strongest(victim_items, HeistItemEffectType.REDUCE_THEFT_PERCENTAGE)
    if reduction is not None:
        amount = floor_points(Decimal(amount) * (1 - as_decimal(reduction.effect_value) / 100))
        items_used.append(_usage(reduction, ReductionEffect(reduction=reduction.effect_value)))

    return ItemEffectResult(
        final_amount=apply_protection_floor(amount, victim_balance, config),
        items_used=items_used,
        shield_blocked=False,
        effective_percentage=float(effective_percentage),
    )


def _is_usable(instance: UserHeistItem, now: datetime) -> bool:
    if not instance.is_active:
        return False
    if instance.expires_at is not None and ensure_aware(instance.expires_at) <= now:
        return False
    if instance.uses_remaining is not None and instance.uses_remaining <= 0:
        return False
    return True


class HeistItemService:
    """Data access for the item catalog and owned item instances."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db_session
        self._clock = clock

    async def active_items(
        self,
        user_id: UUID,
        role: ItemRole,
        now: datetime | None = None,
    ) -> list[ActiveItem]:
        now = ensure_aware(now or self._clock())
        item_types = OFFENSIVE_ITEM_TYPES if role == "attacker" else DEFENSIVE_ITEM_TYPES
        stmt = (
            select(UserHeistItem, HeistItem)
            .join(HeistItem, HeistItem.id == UserHeistItem.item_id)
            .where(
                UserHeistItem.user_id == user_id,
                UserHeistItem.is_active.is_(True),
                HeistItem.is_active.is_(True),
                HeistItem.item_type.in_(item_types),
                or_(UserHeistItem.expires_at.is_(None), UserHeistItem.expires_at > now),
                or_(UserHeistItem.uses_remaining.is_(None), UserHeistItem.uses_remaining > 0),
            )
            .order_by(UserHeistItem.purchased_at.asc())
        )
        result = await self._db.execute(stmt)
        return [
            ActiveItem(
                user_item_id=instance.id,
                user_id=instance.user_id,
                item_id=item.id,
                name=item.name,
                effect_type=item.effect_type,
                effect_value=float(item.effect_value),
                purchased_at=ensure_aware(instance.purchased_at),
                expires_at=ensure_aware(instance.expires_at) if instance.expires_at else None,
                uses_remaining=instance.uses_remaining,
            )
            for instance, item in result.all()
        ]

    async def record_usage(self, heist_id: UUID, usage: ItemUsage) -> HeistItemUsage:
        """Persist the usage row and consume one use of the exact owned instance."""

        now = self._clock()
        record = HeistItemUsage(
            heist_id=heist_id,
            user_id=usage.user_id,
            item_id=usage.item_id,
            user_item_id=usage.user_item_id,
            effect_applied=usage.effect.as_payload(),
            used_at=now,
        )
        self._db.add(record)

        stmt = (
            select(UserHeistItem)
            .where(UserHeistItem.id == usage.user_item_id, UserHeistItem.user_id == usage.user_id)
            .with_for_update()
        )
        instance = (await self._db.execute(stmt)).scalar_one_or_none()
        if instance is not None and instance.uses_remaining is not None:
            instance.uses_remaining = max(instance.uses_remaining - 1, 0)
            if instance.uses_remaining == 0:
                instance.is_active = False
                logger.info(
                    "Heist item exhausted",
                    user_id=str(usage.user_id),
                    user_item_id=str(usage.user_item_id),
                    item=usage.item_name,
                )

        await self._db.flush()
        return record

    async def list_catalog(self) -> list[HeistItem]:
        stmt = (
            select(HeistItem)
            .where(HeistItem.is_active.is_(True))
            .order_by(HeistItem.item_type.asc(), HeistItem.coin_cost.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_item(self, item_id: UUID) -> HeistItem | None:
        return await self._db.get(HeistItem, item_id)

    async def inventory(self, user_id: UUID) -> list[UserHeistItem]:
        """Return usable instances, deactivating any that expired or ran out."""

        now = ensure_aware(self._clock())
        stmt = (
            select(UserHeistItem)
            .options(selectinload(UserHeistItem.item))
            .where(UserHeistItem.user_id == user_id, UserHeistItem.is_active.is_(True))
            .order_by(UserHeistItem.purchased_at.desc())
        )
        instances = list((await self._db.execute(stmt)).scalars().all())

        usable: list[UserHeistItem] = []
        deactivated = 0
        for instance in instances:
            if _is_usable(instance, now):
                usable.append(instance)
            else:
                instance.is_active = False
                deactivated += 1

        if deactivated:
            await self._db.flush()
            logger.info("Deactivated spent heist items", user_id=str(user_id), count=deactivated)
        return usable

    async def purchase(self, user_id: UUID, item_id: UUID) -> UserHeistItem:
        """Debit coins and grant (or extend) an owned instance of the item."""

        item = await self.get_item(item_id)
        if item is None or not item.is_active:
            raise ItemPurchaseError("Item not found or unavailable", code="ITEM_NOT_FOUND")

        user = (await self._db.execute(select(User).where(User.id == user_id).with_for_update())).scalar_one_or_none()
        if user is None:
            raise ItemPurchaseError("User not found", code="USER_NOT_FOUND")

        coins = int(user.coins or 0)
        if coins < item.coin_cost:
            raise ItemPurchaseError(
                f"Insufficient coins: {item.coin_cost} required, {coins} available",
                code="INSUFFICIENT_COINS",
            )

        now = ensure_aware(self._clock())
        user.coins = coins - item.coin_cost

        instance: UserHeistItem | None = None
        if item.duration_hours is None:
            stmt = (
                select(UserHeistItem)
                .where(
                    UserHeistItem.user_id == user_id,
                    UserHeistItem.item_id == item_id,
                    UserHeistItem.is_active.is_(True),
                    UserHeistItem.expires_at.is_(None),
                )
                .with_for_update()
            )
            instance = (await self._db.execute(stmt)).scalars().first()

        if instance is not None:
            instance.quantity = int(instance.quantity or 0) + 1
            if item.max_uses is not None and instance.uses_remaining is not None:
                instance.uses_remaining += item.max_uses
        else:
            # Time-limited purchases always get their own instance and expiry.
            instance = UserHeistItem(
                user_id=user_id,
                item_id=item_id,
                quantity=1,
                purchased_at=now,
                expires_at=now + timedelta(hours=item.duration_hours) if item.duration_hours else None,
                uses_remaining=item.max_uses,
                is_active=True,
            )
            self._db.add(instance)

        await self._db.flush()
        logger.info(
            "Purchased heist item",
            user_id=str(user_id),
            item=item.name,
            coin_cost=item.coin_cost,
            coins_remaining=user.coins,
        )
        return instance
