from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Primary store (paddle pledges). DATABASE_URL wins over the PG_* parts.
    DATABASE_URL: Optional[str] = None
    PG_HOST: str = "localhost"
    PG_PORT: int = 5432
    PG_DATABASE: str = "pledges"
    PG_USER: Optional[str] = None
    PG_PASSWORD: Optional[str] = None
    PG_SSLMODE: str = "prefer"

    # Secondary store (SMS pledges) - required
    SMS_DATABASE_URL: str

    # HTTP
    PORT: int = 3001
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    # Pledge drive
    GOAL_AMOUNT_CENTS: int = 100_000_000
    PADDLE_TIERS: list[int] = [100000, 50000, 25000, 10000, 5000, 2500]
    TEXT_PLEDGE_LIMIT: int = 50
    DISPLAY_TIMEZONE: str = "America/New_York"

    # Background polling and store access
    POLL_INTERVAL_SECONDS: float = 5.0
    QUERY_TIMEOUT_SECONDS: float = 10.0
    BROADCAST_SEND_TIMEOUT_SECONDS: float = 5.0
    AUTO_CREATE_SCHEMA: bool = True

    LOG_LEVEL: str = "INFO"

    def primary_database_url(self) -> str:
        """Connection URL for the primary store."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        url = URL.create(
            "postgresql+psycopg2",
            username=self.PG_USER,
            password=self.PG_PASSWORD,
            host=self.PG_HOST,
            port=self.PG_PORT,
            database=self.PG_DATABASE,
            query={"sslmode": self.PG_SSLMODE},
        )
        return url.render_as_string(hide_password=False)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
