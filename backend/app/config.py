"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Entity Workflow Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, testing, production

    # Workflow execution
    WORKFLOW_STEP_TIMEOUT: Optional[float] = None  # seconds, None = unbounded
    WORKFLOW_MAX_NESTING_DEPTH: int = 32
    RETRY_DEFAULT_BACKOFF: float = 0.0

    # Entity attribute reads
    ATTRIBUTE_READY_TIMEOUT: Optional[float] = None  # attributeWhenReady
    SENSOR_READ_TIMEOUT: float = 0.0  # plain sensor reads do not block by default

    # Checkpoint persistence; empty keeps snapshots in memory only
    PERSISTENCE_URL: str = ""
    SQLALCHEMY_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    WORKFLOW_LOG_LEVEL: Optional[str] = None  # level of log step messages, None = LOG_LEVEL

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_testing(self) -> bool:
        """Check if running under the test suite."""
        return self.ENVIRONMENT == "testing"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
