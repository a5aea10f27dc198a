"""
Ledger configuration.

Values come from the process environment first, then a local ``.env``.
Amounts are integers in the smallest USDC unit (6 decimals), so the
defaults of 100000 are 0.1 USDC.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Pricing
    UNLOCK_PRICE: int = Field(default=100000, gt=0)
    TIP_AMOUNT: int = Field(default=100000, gt=0)
    VIEW_CHARGE_AMOUNT: int = Field(default=100000, ge=0)
    BASE_PAY_AMOUNT: int = Field(default=0, ge=0)
    USDC_DECIMALS: int = 6

    # Onboarding
    NEW_USER_CREDITS: int = Field(default=10, ge=0)

    # Storage; without a URI the service runs on the in-memory store
    MONGODB_URI: Optional[str] = None
    MONGODB_DB: str = "video-ledger"

    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings()
