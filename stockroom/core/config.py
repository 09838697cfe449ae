"""
Stockroom settings, read from the environment and an optional ``.env`` file.
"""
import warnings
from typing import List, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

_PLACEHOLDER_SECRETS = {"change-me", "changeme", "secret", "stockroom-dev-secret"}


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "Stockroom"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "stockroom-dev-secret"

    # Either a full DATABASE_URL or the POSTGRES_* parts
    POSTGRES_USER: str = "stockroom"
    POSTGRES_PASSWORD: str = "stockroom"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "stockroom"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)

    # Tokens are issued by the identity provider with the same key
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # ============= WORKFLOW =============

    WITHDRAWAL_COOLDOWN_SECONDS: float = Field(default=3.0, ge=0)
    EXPIRING_SOON_DAYS: int = Field(default=30, gt=0)
    CRITICAL_EXPIRY_DAYS: int = Field(default=7, gt=0)
    RECENT_MOVEMENT_DAYS: int = Field(default=7, gt=0)
    PAYMENT_MIN_LEAD_HOURS: int = Field(default=48, ge=0)

    # Loads demo suppliers, products and a pending request on startup
    SEED_DEMO: bool = False

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v
        data = info.data
        return "postgresql://{}:{}@{}:{}/{}".format(
            data.get("POSTGRES_USER", "stockroom"),
            data.get("POSTGRES_PASSWORD", "stockroom"),
            data.get("POSTGRES_HOST", "postgres"),
            data.get("POSTGRES_PORT", "5432"),
            data.get("POSTGRES_DB", "stockroom"),
        )

    @model_validator(mode="after")
    def check_deployment_safety(self) -> "Settings":
        weak_secret = self.SECRET_KEY in _PLACEHOLDER_SECRETS or len(self.SECRET_KEY) < 32
        if weak_secret and not self.DEBUG:
            raise ValueError("SECRET_KEY is a placeholder or shorter than 32 characters")
        if weak_secret:
            warnings.warn("SECRET_KEY is weak; set a real key outside development", UserWarning, stacklevel=2)

        if self.SEED_DEMO and not self.DEBUG:
            raise ValueError("SEED_DEMO requires DEBUG=true")

        if self.CRITICAL_EXPIRY_DAYS > self.EXPIRING_SOON_DAYS:
            raise ValueError("CRITICAL_EXPIRY_DAYS cannot exceed EXPIRING_SOON_DAYS")
        return self


settings = Settings()
