from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./heist.db"
    database_pool_size: int = 10
    database_echo: bool = False
    tracing_enabled: bool = True
    tracing_console_export: bool = False
    log_level: str = "INFO"

    # Heist feature flag and token economics
    heist_enabled: bool = True
    heist_tokens_per_referral: int = 1
    heist_token_cost: int = 1

    # Heist mechanics
    heist_steal_percentage: float = 0.05
    heist_max_points: int = 100
    heist_min_victim_points: int = 20

    # Cooldowns (hours)
    heist_attacker_cooldown_hours: int = 24
    heist_victim_protection_hours: int = 48

    # Rate limiting
    heist_max_per_day: int = 10

    # Item system
    heist_items_enabled: bool = True
    heist_min_protection_percentage: float = 0.10

    # Notifications
    heist_notifications_enabled: bool = True
    heist_notification_retention_days: int = 90

    # Transfer transaction bounds
    heist_transaction_isolation: Literal["SERIALIZABLE", "REPEATABLE READ", "READ COMMITTED"] = "SERIALIZABLE"
    heist_transaction_max_wait_seconds: float = 5.0
    heist_transaction_timeout_seconds: float = 10.0
    heist_max_attempts: int = 3

    @field_validator("heist_transaction_isolation", mode="before")
    @classmethod
    def _normalize_isolation(cls, value: object) -> object:
        if isinstance(value, str):
            return " ".join(value.replace("_", " ").upper().split())
        return value

    @field_validator("heist_max_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
