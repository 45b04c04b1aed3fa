"""Tunable heist economics resolved from application settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_FLOOR, Decimal

from heist_api.core.settings import Settings, get_settings


@dataclass(frozen=True)
class HeistConfig:
    """Read-only snapshot of heist parameters."""

    enabled: bool = True
    tokens_per_referral: int = 1
    token_cost: int = 1
    steal_percentage: float = 0.05
    max_points_per_heist: int = 100
    min_victim_points: int = 20
    attacker_cooldown_hours: int = 24
    victim_protection_hours: int = 48
    max_heists_per_day: int = 10
    items_enabled: bool = True
    min_protection_percentage: float = 0.10
    notifications_enabled: bool = True

    @property
    def attacker_cooldown(self) -> timedelta:
        return timedelta(hours=self.attacker_cooldown_hours)

    @property
    def victim_protection(self) -> timedelta:
        return timedelta(hours=self.victim_protection_hours)

    @classmethod
    def from_settings(cls, source: Settings) -> "HeistConfig":
        return cls(
            enabled=source.heist_enabled,
            tokens_per_referral=source.heist_tokens_per_referral,
            token_cost=source.heist_token_cost,
            steal_percentage=source.heist_steal_percentage,
            max_points_per_heist=source.heist_max_points,
            min_victim_points=source.heist_min_victim_points,
            attacker_cooldown_hours=source.heist_attacker_cooldown_hours,
            victim_protection_hours=source.heist_victim_protection_hours,
            max_heists_per_day=source.heist_max_per_day,
            items_enabled=source.heist_items_enabled,
            min_protection_percentage=source.heist_min_protection_percentage,
            notifications_enabled=source.heist_notifications_enabled,
        )


def get_heist_config() -> HeistConfig:
    """Return the current heist configuration snapshot."""

    return HeistConfig.from_settings(get_settings())


def validate_heist_config(config: HeistConfig) -> list[str]:
    """Return human readable errors for out-of-range parameters (empty when valid)."""

    errors: list[str] = []
    if config.steal_percentage <= 0 or config.steal_percentage > 0.5:
        errors.append("HEIST_STEAL_PERCENTAGE must be between 0 and 0.5 (0% to 50%)")
    if config.max_points_per_heist < 1 or config.max_points_per_heist > 1000:
        errors.append("HEIST_MAX_POINTS must be between 1 and 1000")
    if config.min_victim_points < 0:
        errors.append("HEIST_MIN_VICTIM_POINTS must be non-negative")
    if config.attacker_cooldown_hours < 0:
        errors.append("HEIST_ATTACKER_COOLDOWN_HOURS must be non-negative")
    if config.victim_protection_hours < 0:
        errors.append("HEIST_VICTIM_PROTECTION_HOURS must be non-negative")
    if config.tokens_per_referral <= 0:
        errors.append("HEIST_TOKENS_PER_REFERRAL must be positive")
    if config.token_cost <= 0:
        errors.append("HEIST_TOKEN_COST must be positive")
    if config.max_heists_per_day <= 0:
        errors.append("HEIST_MAX_PER_DAY must be positive")
    if config.min_protection_percentage < 0 or config.min_protection_percentage >= 1:
        errors.append("HEIST_MIN_PROTECTION_PERCENTAGE must be between 0 and 1 (exclusive)")
    return errors


def floor_points(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def as_decimal(value: float | int) -> Decimal:
    return Decimal(str(value))


def calculate_points_to_steal(victim_balance: int, config: HeistConfig) -> int:
    """Base steal amount before item modifiers."""

    percentage_amount = floor_points(Decimal(victim_balance) * as_decimal(config.steal_percentage))
    return min(percentage_amount, config.max_points_per_heist)
