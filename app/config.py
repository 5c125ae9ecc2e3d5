from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./commission_settlement.db"

    # Transfer provider
    # mock: completes transfers locally (dev/test)
    # stripe: creates Stripe Connect transfers to the promoter's account
    TRANSFER_PROVIDER: Literal["mock", "stripe"] = "mock"
    STRIPE_SECRET_KEY: Optional[str] = None
    TRANSFER_CURRENCY: str = "usd"
    TRANSFER_TIMEOUT_SECONDS: float = 5.0
    TRANSFER_MAX_NETWORK_RETRIES: int = 0

    # Ledger
    LEDGER_MAX_TRANSITION_ATTEMPTS: int = 3
    # a PROCESSING payout untouched this long is treated as a lost attempt and may be retried
    STALE_PROCESSING_SECONDS: int = 900

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    SEED_ON_STARTUP: bool = False

    @field_validator("TRANSFER_TIMEOUT_SECONDS")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("TRANSFER_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("LEDGER_MAX_TRANSITION_ATTEMPTS")
    @classmethod
    def _at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("LEDGER_MAX_TRANSITION_ATTEMPTS must be at least 1")
        return v

    @field_validator("STALE_PROCESSING_SECONDS")
    @classmethod
    def _non_negative_stale_threshold(cls, v: int) -> int:
        if v < 0:
            raise ValueError("STALE_PROCESSING_SECONDS must not be negative")
        return v

    @field_validator("TRANSFER_CURRENCY")
    @classmethod
    def _lower_currency(cls, v: str) -> str:
        return v.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
