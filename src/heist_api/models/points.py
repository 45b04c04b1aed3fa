"""Point audit events recorded alongside balance mutations."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, func
from sqlalchemy.dialects.postgresql import UUID

from heist_api.core.time import utcnow
from heist_api.db.base import Base


class PointEventType(str, Enum):
    HEIST_GAIN = "HEIST_GAIN"
    HEIST_LOSS = "HEIST_LOSS"


class UserPointEvent(Base):
    """Signed point movement for one user."""

    __tablename__ = "user_point_events"
    __table_args__ = (Index("ix_user_point_events_user_created", "user_id", "created_at"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    points = Column(Integer, nullable=False)
    event_type = Column(SqlEnum(PointEventType, name="point_event_type"), nullable=False)
    heist_id = Column(UUID(as_uuid=True), ForeignKey("heists.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
