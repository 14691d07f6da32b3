"""
Gatekeeper - Configuration
==========================

All engine settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Gatekeeper"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./gatekeeper.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Gates
    # ==========================================================================
    DEFAULT_CATEGORY: str = "standard"
    APPROVAL_ACCEPTED_TOKENS: list[str] = ["approved", "yes", "approve", "accept"]
    APPROVAL_AMBIGUOUS_TOKENS: list[str] = ["ok", "sure", "fine", "alright"]
    COVERAGE_THRESHOLD_PERCENT: float = 80.0

    # ==========================================================================
    # Agent Retries
    # ==========================================================================
    AGENT_RETRY_LIMIT: int = 2
    AGENT_RETRY_WINDOW_MINUTES: Optional[int] = 10  # None counts since gate creation
    AGENT_RETRY_COUNTED_STATUSES: list[str] = ["failed"]

    # ==========================================================================
    # Self-Healing
    # ==========================================================================
    SELF_HEALING_MAX_ATTEMPTS: int = 3
    SELF_HEALING_ROLES: list[str] = [
        "frontend_developer",
        "backend_developer",
        "ml_engineer",
        "data_engineer",
    ]
    SELF_HEALING_ERROR_LIMIT: int = 10
    ESCALATION_ERROR_PREVIEW: int = 3

    # ==========================================================================
    # Orchestration
    # ==========================================================================
    HANDOFF_CONTEXT_LIMIT: int = 10
    SCHEDULER_MAX_EVENTS: int = 200

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
