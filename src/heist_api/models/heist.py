"""Heist tokens, outcome records, and modifier item models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from heist_api.core.time import utcnow
from heist_api.db.base import Base


class HeistStatus(str, Enum):
    """Terminal outcome of a heist attempt."""

    SUCCESS = "SUCCESS"
    FAILED_INSUFFICIENT_TOKENS = "FAILED_INSUFFICIENT_TOKENS"
    FAILED_COOLDOWN = "FAILED_COOLDOWN"
    FAILED_TARGET_PROTECTED = "FAILED_TARGET_PROTECTED"
    FAILED_INVALID_TARGET = "FAILED_INVALID_TARGET"
    FAILED_INSUFFICIENT_POINTS = "FAILED_INSUFFICIENT_POINTS"
    FAILED_SHIELD = "FAILED_SHIELD"


class HeistItemType(str, Enum):
    SWORD = "SWORD"
    HAMMER = "HAMMER"
    SHIELD = "SHIELD"

    @property
    def is_offensive(self) -> bool:
        return self in (HeistItemType.SWORD, HeistItemType.HAMMER)


OFFENSIVE_ITEM_TYPES = (HeistItemType.SWORD, HeistItemType.HAMMER)
DEFENSIVE_ITEM_TYPES = (HeistItemType.SHIELD,)


class HeistItemEffectType(str, Enum):
    INCREASE_STEAL_PERCENTAGE = "INCREASE_STEAL_PERCENTAGE"
    INCREASE_STEAL_BONUS = "INCREASE_STEAL_BONUS"
    REDUCE_THEFT_PERCENTAGE = "REDUCE_THEFT_PERCENTAGE"
    BLOCK_THEFT_CHANCE = "BLOCK_THEFT_CHANCE"


class HeistNotificationType(str, Enum):
    HEIST_SUCCESS = "HEIST_SUCCESS"
    HEIST_VICTIM = "HEIST_VICTIM"
    TOKEN_EARNED = "TOKEN_EARNED"


class HeistToken(Base):
    """Per-user attack token balance."""

    __tablename__ = "heist_tokens"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_heist_tokens_balance_non_negative"),
        Index("ix_heist_tokens_balance", "balance"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    total_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Integer, nullable=False, default=0, server_default="0")
    last_earned_at = Column(DateTime(timezone=True), nullable=True)
    last_spent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class Heist(Base):
    """Immutable outcome record for one committed heist attempt."""

    __tablename__ = "heists"
    __table_args__ = (
        Index("ix_heists_attacker_created", "attacker_id", "created_at"),
        Index("ix_heists_victim_created", "victim_id", "created_at"),
        Index("ix_heists_attacker_status", "attacker_id", "status"),
        Index("ix_heists_victim_status", "victim_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    attacker_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    victim_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    points_stolen = Column(Integer, nullable=False, default=0)
    attacker_points_before = Column(Integer, nullable=False, default=0)
    attacker_points_after = Column(Integer, nullable=False, default=0)
    victim_points_before = Column(Integer, nullable=False, default=0)
    victim_points_after = Column(Integer, nullable=False, default=0)
    token_spent = Column(Boolean, nullable=False, default=False, server_default="false")
    status = Column(SqlEnum(HeistStatus, name="heist_status"), nullable=False)
    failure_reason = Column(Text, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class HeistItem(Base):
    """Catalog entry for a purchasable modifier item."""

    __tablename__ = "heist_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    item_type = Column(SqlEnum(HeistItemType, name="heist_item_type"), nullable=False, index=True)
    effect_type = Column(SqlEnum(HeistItemEffectType, name="heist_item_effect_type"), nullable=False)
    effect_value = Column(Float, nullable=False)
    coin_cost = Column(Integer, nullable=False)
    duration_hours = Column(Integer, nullable=True)
    max_uses = Column(Integer, nullable=True)
    icon = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    owned_instances = relationship("UserHeistItem", back_populates="item")


class UserHeistItem(Base):
    """A user's owned copy of a catalog item."""

    __tablename__ = "user_heist_items"
    __table_args__ = (
        Index("ix_user_heist_items_user_active", "user_id", "is_active"),
        Index("ix_user_heist_items_user_expires", "user_id", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(UUID(as_uuid=True), ForeignKey("heist_items.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    purchased_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    uses_remaining = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")

    item = relationship("HeistItem", back_populates="owned_instances")


class HeistItemUsage(Base):
    """Audit row linking an outcome record to the item instance it consumed."""

    __tablename__ = "heist_item_usages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    heist_id = Column(UUID(as_uuid=True), ForeignKey("heists.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(UUID(as_uuid=True), ForeignKey("heist_items.id", ondelete="CASCADE"), nullable=False, index=True)
    user_item_id = Column(
        UUID(as_uuid=True),
        ForeignKey("user_heist_items.id", ondelete="SET NULL"),
        nullable=True,
    )
    effect_applied = Column(JSON, nullable=False)
    used_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class HeistNotification(Base):
    """In-app notification produced after a heist commits or a token is earned."""

    __tablename__ = "heist_notifications"
    __table_args__ = (
        Index("ix_heist_notifications_user_read", "user_id", "read"),
        Index("ix_heist_notifications_user_created", "user_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    heist_id = Column(UUID(as_uuid=True), ForeignKey("heists.id", ondelete="SET NULL"), nullable=True)
    notification_type = Column(SqlEnum(HeistNotificationType, name="heist_notification_type"), nullable=False)
    message = Column(Text, nullable=False)
    metadata_json = Column("metadata", JSON, nullable=True)
    read = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
