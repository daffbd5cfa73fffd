"""
Hive - Configuration
====================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Hive Pipeline Orchestrator"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./hive.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Single operator account for the admin surface.
    # Generate the hash with: python scripts/hash_password.py
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD_HASH: str = ""  # bcrypt; empty disables login

    # ==========================================================================
    # Worker callbacks
    # ==========================================================================
    # Public base URL the agents use to reach this service
    HIVE_CALLBACK_BASE_URL: str = "http://localhost:8000"

    # ==========================================================================
    # Agent Dispatch
    # ==========================================================================
    AGENT_DISPATCH_BACKEND: Literal["gateway", "cli"] = "cli"
    AGENT_DISPATCH_TIMEOUT_SECONDS: float = 60.0

    # Gateway backend
    AGENT_GATEWAY_URL: str = "http://localhost:18789"
    AGENT_GATEWAY_TOKEN: str | None = None

    # CLI backend
    AGENT_CLI_COMMAND: str = "openclaw sessions spawn --json"

    # Model selection
    HIVE_AGENT_MODEL: str = "sonnet"
    HIVE_STAGE_MODELS: dict[str, str] = {}

    # ==========================================================================
    # Pipeline
    # ==========================================================================
    HIVE_DEFAULT_MAX_RETRIES: int = 2
    HIVE_ARCHIVE_LIMIT: int = 50

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

    def model_for_stage(self, stage: str) -> str:
        """Worker model for a pipeline stage, falling back to the default."""
        return self.HIVE_STAGE_MODELS.get(stage, self.HIVE_AGENT_MODEL)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
