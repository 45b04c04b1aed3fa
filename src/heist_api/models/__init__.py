"""SQLAlchemy models package."""

from .heist import (  # noqa: F401
    DEFENSIVE_ITEM_TYPES,
    OFFENSIVE_ITEM_TYPES,
    Heist,
    HeistItem,
    HeistItemEffectType,
    HeistItemType,
    HeistItemUsage,
    HeistNotification,
    HeistNotificationType,
    HeistStatus,
    HeistToken,
    UserHeistItem,
)
from .points import PointEventType, UserPointEvent  # noqa: F401
from .user import User, UserStatusEnum  # noqa: F401
