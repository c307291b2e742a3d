from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RIDER_LEDGER_",
        env_file=".env",
        extra="ignore",
    )

    APP_NAME: str = "rider-ledger"
    APP_VERSION: str = "1.0.0"
    CURRENCY: str = "PKR"

    # Exposure rules (minor units / days)
    OVERDUE_THRESHOLD: int = 15000
    SETTLEMENT_GRACE_DAYS: int = 7

    # Daily bonus
    BONUS_TARGET_DELIVERIES: int = 10
    BONUS_AMOUNT: int = 200
    BONUS_HISTORY_LIMIT: int = 10

    # Order split
    DEFAULT_DELIVERY_FEE: int = 150
    DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.10")

    COMMIT_RETRIES: int = 3
    EVENT_QUEUE_SIZE: int = 100

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"  # comma separated

    @property
    def cors_origins_list(self) -> List[str]:
        if not self.CORS_ORIGINS:
            return []
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
