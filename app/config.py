from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/pm_billing"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # QuickBooks Online (access token is supplied, OAuth handled elsewhere)
    QBO_REALM_ID: str | None = None
    QBO_ACCESS_TOKEN: str | None = None
    QBO_SANDBOX: bool = True
    QBO_MINOR_VERSION: int = 65
    QBO_TIMEOUT_SECONDS: float = 30.0

    # Sync policy
    QBO_SYNC_MAX_RETRIES: int = 3
    QBO_SYNC_BACKOFF_BASE_SECONDS: float = 0.5
    QBO_SYNC_BACKOFF_MAX_SECONDS: float = 8.0
    QBO_DISPLAY_NAME_MAX_ATTEMPTS: int = 100
    QBO_DEFAULT_CURRENCY: str = "CAD"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        """Never echo SQL in production."""
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
