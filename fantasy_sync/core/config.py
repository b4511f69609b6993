"""
Application configuration with environment-specific settings.

Supported environment files (loaded in order of precedence):
1. .env.{ENVIRONMENT} (e.g., .env.production, .env.development)
2. .env (fallback)

Required for production:
- DATABASE_URL
- SYNC_PLUGIN (module providing the domain handlers and round reader)
"""
import os
import logging
from pathlib import Path
from typing import Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import ConfigDict

# Get the project root directory (3 levels up from this file)
PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_DATABASE_URL = "sqlite:///./fantasy_sync.db"

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings with environment-specific configuration."""

    # Environment
    ENVIRONMENT: Literal["development", "production", "test"] = "development"

    model_config = ConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Allow extra fields from .env
    )

    # Application
    APP_NAME: str = "Fantasy Sync Orchestrator"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8002

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Europe/London"
    SCHEDULER_MISFIRE_GRACE_SECONDS: int = 300

    # Competition calendar (month is 1-indexed, range may wrap the year end)
    SEASON_START_MONTH: int = 8
    SEASON_END_MONTH: int = 5

    # Match-day windows
    MATCH_DURATION_MINUTES: int = 115
    MATCH_WINDOW_BUFFER_MINUTES: int = 30
    SELECTION_FALLBACK_START_HOUR: int = 9
    SELECTION_FALLBACK_END_HOUR: int = 19

    # Task queue
    TASK_DEFAULT_ATTEMPTS: int = 3
    TASK_BACKOFF_BASE_SECONDS: int = 60
    TASK_DEFAULT_PRIORITY: int = 5  # Lower runs first
    KEEP_COMPLETED_TASKS: int = 100
    KEEP_FAILED_TASKS: int = 50

    # Executor
    EXECUTOR_CONCURRENCY: int = 5
    EXECUTOR_POLL_INTERVAL_SECONDS: float = 1.0
    STALL_TIMEOUT_SECONDS: int = 900

    # External collaborators: "package.module:attribute" resolving to a SyncPlugin
    SYNC_PLUGIN: Optional[str] = None

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT == "production"

    def validate_required_secrets(self) -> list[str]:
        """
        Validate that required settings are present for the current environment.

        Returns:
            List of missing setting names (empty if all present)
        """
        missing = []

        if self.is_production():
            if not self.DATABASE_URL or self.DATABASE_URL == DEFAULT_DATABASE_URL:
                missing.append("DATABASE_URL")
            if not self.SYNC_PLUGIN:
                missing.append("SYNC_PLUGIN")

        return missing

    def validate_calendar(self) -> list[str]:
        """Return human-readable problems with the calendar settings."""
        problems = []
        for name in ("SEASON_START_MONTH", "SEASON_END_MONTH"):
            value = getattr(self, name)
            if not 1 <= value <= 12:
                problems.append(f"{name} must be between 1 and 12 (got {value})")
        if not 0 <= self.SELECTION_FALLBACK_START_HOUR < self.SELECTION_FALLBACK_END_HOUR <= 24:
            problems.append(
                "SELECTION_FALLBACK_START_HOUR must be before SELECTION_FALLBACK_END_HOUR (0-24)"
            )
        return problems


def _load_env_file() -> Path:
    """
    Load the appropriate environment file based on ENVIRONMENT variable.

    Loads in order of precedence:
    1. .env.{ENVIRONMENT} (e.g., .env.production, .env.development)
    2. .env (fallback)
    """
    environment = os.getenv("ENVIRONMENT", "development")

    # Try environment-specific file first
    env_file = PROJECT_ROOT / f".env.{environment}"
    if env_file.exists():
        logger.info(f"Loading environment from {env_file.name}")
        return env_file

    default_env = PROJECT_ROOT / ".env"
    if default_env.exists():
        logger.info(f"Loading environment from .env (environment: {environment})")
    return default_env


_env_file = _load_env_file()


class _SettingsWithEnvFile(Settings):
    model_config = ConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


settings = _SettingsWithEnvFile()

# Validate on startup
for problem in settings.validate_calendar():
    logger.warning(problem)

missing_secrets = settings.validate_required_secrets()
if missing_secrets:
    logger.warning(f"Missing required settings for {settings.ENVIRONMENT}: {', '.join(missing_secrets)}")
    if settings.is_production():
        raise ValueError(
            f"Cannot start in production with missing settings: {', '.join(missing_secrets)}. "
            f"Please set these environment variables in .env.production"
        )
