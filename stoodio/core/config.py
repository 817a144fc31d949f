import json
from decimal import Decimal
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./stoodio.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Share withheld from engineer/producer/stoodio payouts on completion
    PLATFORM_FEE_RATE: Decimal = Decimal("0.10")

    # Redis lock knobs for slot checks and wallet debits (seconds)
    LOCK_TIMEOUT_SECONDS: int = 10
    LOCK_BLOCKING_TIMEOUT_SECONDS: int = 5

    ENFORCE_SESSION_START_TIME: bool = True
    SESSION_STATE_TTL_SECONDS: int = 86400

    OUTBOX_BATCH_SIZE: int = 100

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    def split_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated or JSON list of origins from environment."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return [str(o) for o in parsed]
            except json.JSONDecodeError:
                pass
            return [o.strip() for o in v.split(",") if o.strip()]
        return v

    @field_validator("PLATFORM_FEE_RATE")
    def check_fee_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("PLATFORM_FEE_RATE must be in [0, 1)")
        return v


settings = Settings()
