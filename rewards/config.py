import logging
from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "PrimeStyle API"
    API_PREFIX: str = "/api"
    PORT: int = 3001
    CORS_ORIGIN: str = "*"

    # Tokens
    JWT_SECRET: str = "dev_secret"
    TOKEN_TTL_SECONDS: int = Field(default=7 * 24 * 60 * 60, gt=0)
    BCRYPT_ROUNDS: int = Field(default=10, ge=4, le=31)

    # Storage; ":memory:" keeps everything in process
    DATABASE_URL: str = "./data.db"

    # Ledger policy
    ATTEMPT_CREDIT_RATIO: Decimal = Decimal("0.5")
    MIN_PAYOUT: Decimal = Decimal("1.00")
    ACTIVITY_LIMIT: int = Field(default=25, gt=0)

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level.upper())
