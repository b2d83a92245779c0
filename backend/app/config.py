"""Application configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    APP_NAME: str = "Workflow Process Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./workflow_engine.db"
    SQLALCHEMY_ECHO: bool = False

    # Engine Settings
    ENGINE_MAX_STEPS: int = 1000
    MAX_CONCURRENT_EXECUTIONS: int = 10
    DEFAULT_STEP_TIMEOUT_SECONDS: float = 300.0
    TIMER_POLL_INTERVAL_SECONDS: float = 1.0
    WAKE_CLAIM_LEASE_SECONDS: float = 300.0
    DEAD_END_IS_FATAL: bool = True

    # Built-in handler settings
    HANDLER_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
