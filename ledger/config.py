from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    CURRENCY: str = "INR"

    # One coin is worth this much currency, for every coin bucket
    COIN_TO_CURRENCY_RATE: Decimal = Decimal("0.10")

    ATTRIBUTION_WINDOW_DAYS: int = Field(default=30, gt=0)
    MAX_MUTATION_RETRIES: int = Field(default=3, ge=1)

    PAYOUT_BUCKET: str = "affiliate_earnings"
    MIN_PAYOUT_AMOUNT: Decimal = Decimal("0")

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LEDGER_", extra="ignore")


settings = Settings()
