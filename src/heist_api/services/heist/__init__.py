from .config import HeistConfig, calculate_points_to_steal, get_heist_config, validate_heist_config
from .cooldowns import CooldownInfo, CooldownStatus, CooldownTracker
from .dispatch import BackgroundDispatcher
from .effects import BlockEffect, BonusEffect, BoostEffect, ReductionEffect, parse_effect
from .eligibility import EligibilityBreakdown, EligibilityEvaluator, EligibilityResult
from .errors import HeistConflictError, HeistError, InsufficientTokensError, ItemPurchaseError
from .execution import HeistExecutor, HeistMetadata, HeistResult, STATUS_BY_CODE
from .history import HeistHistoryEntry, HeistHistoryReader, HeistStats
from .items import ActiveItem, HeistItemService, ItemEffectResult, ItemUsage, apply_item_effects
from .notifications import HeistNotificationService, HeistNotifier
from .tokens import TokenBalance, TokenLedger

__all__ = [
    "ActiveItem",
    "BackgroundDispatcher",
    "BlockEffect",
    "BonusEffect",
    "BoostEffect",
    "CooldownInfo",
    "CooldownStatus",
    "CooldownTracker",
    "EligibilityBreakdown",
    "EligibilityEvaluator",
    "EligibilityResult",
    "HeistConfig",
    "HeistConflictError",
    "HeistError",
    "HeistExecutor",
    "HeistHistoryEntry",
    "HeistHistoryReader",
    "HeistItemService",
    "HeistMetadata",
    "HeistNotificationService",
    "HeistNotifier",
    "HeistResult",
    "HeistStats",
    "InsufficientTokensError",
    "ItemEffectResult",
    "ItemPurchaseError",
    "ItemUsage",
    "ReductionEffect",
    "STATUS_BY_CODE",
    "TokenBalance",
    "TokenLedger",
    "apply_item_effects",
    "calculate_points_to_steal",
    "get_heist_config",
    "parse_effect",
    "validate_heist_config",
]
