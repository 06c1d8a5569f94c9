"""Engine configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    APP_NAME: str = "Blockflow Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, testing, production

    # Scheduler / queue
    ENGINE_MAX_CONCURRENT: int = 5
    SCHEDULER_TICK_SECONDS: float = 0.1
    DEFAULT_PRIORITY: int = 5
    ENGINE_FINISHED_RETENTION: int = 100

    # Run-level retries
    MAX_RETRIES: int = 3
    RETRY_PRIORITY: int = 10
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 60.0
    RETRY_JITTER: bool = False

    # Block limits
    HTTP_TIMEOUT: float = 30.0
    HTTP_ALLOW_PRIVATE_NETWORKS: bool = False
    DB_QUERY_ROW_LIMIT: int = 1000
    DELAY_MAX_SECONDS: float = 300.0
    SANDBOX_MAX_ITERATIONS: int = 10000
    SANDBOX_MAX_SIZE: int = 1_000_000

    # Database (execution log store and the database_query block)
    DATABASE_URL: str = "sqlite+aiosqlite:///./blockflow.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # LLM provider used by invoke_agent blocks
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com"
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 4096
    CLAUDE_TIMEOUT: int = 120

    # Remote policy / orchestrator services
    REMOTE_SERVICE_TIMEOUT: float = 10.0
    REMOTE_SERVICE_MAX_RETRIES: int = 3
    REMOTE_SERVICE_RETRY_DELAY: float = 0.5

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
