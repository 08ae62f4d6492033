"""
Nightshift - Configuration
==========================

All engine settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

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
    APP_NAME: str = "Nightshift"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # Database (task store)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./nightshift.db"
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Paths
    # ==========================================================================
    OUTPUT_DIR: str = "~/nightshift/night_mode"
    MEMORY_DIR: str = "~/nightshift/memory"
    WORKSPACES_DIR: str = "~/nightshift/workspaces"
    LOCK_FILE: str = "~/nightshift/supervisor.lock"
    WORKSPACE_RETENTION_DAYS: int = 7

    # ==========================================================================
    # Executor Binaries
    # ==========================================================================
    CLAUDE_PATH: str = "claude"
    GEMINI_PATH: str = "gemini"
    CODEX_PATH: str = "codex"
    KIMI_PATH: str = "kimi"
    GEMINI_MODEL: str = "gemini-2.5-pro"
    KIMI_MODEL: str | None = None

    # ==========================================================================
    # Process Adapter Limits
    # ==========================================================================
    EXECUTOR_TIMEOUT_SECONDS: float = 600.0
    CODEX_TIMEOUT_SECONDS: float = 1200.0
    KILL_GRACE_SECONDS: float = 5.0  # SIGTERM -> SIGKILL
    CLOSE_GRACE_SECONDS: float = 1.0  # exit seen but pipes still open
    MAX_OUTPUT_BYTES: int = 2 * 1024 * 1024

    # Host env vars never forwarded to executor children
    EXECUTOR_ENV_DENYLIST: list[str] = [
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "MOONSHOT_API_KEY",
        "NOTIFY_WEBHOOK_TOKEN",
    ]

    # ==========================================================================
    # Account Rotation
    # ==========================================================================
    # Credential homes for quota-limited gemini accounts (GEMINI_CLI_HOME)
    GEMINI_ACCOUNT_HOMES: list[str] = []
    ACCOUNT_FAILURE_THRESHOLD: int = 5
    ACCOUNT_AUTH_FAILURE_THRESHOLD: int = 3
    QUOTA_COOLDOWN_SECONDS: float = 3600.0
    ERROR_COOLDOWN_SECONDS: float = 300.0

    # ==========================================================================
    # Night Mode
    # ==========================================================================
    NIGHT_AUTO_APPROVE_GREEN: bool = True
    NIGHT_MAX_JOBS: int = 50
    NIGHT_MAX_RESEARCH_TASKS: int = 10
    NIGHT_MAX_IDEAS: int = 5
    NIGHT_MAX_CODE_PROPOSALS: int = 3
    NIGHT_JOB_TIMEOUT_SECONDS: float = 300.0
    NIGHT_TOTAL_TIMEOUT_SECONDS: float = 5 * 3600.0
    CONTEXT_DAILY_LOG_DAYS: int = 3
    CONTEXT_MAX_PENDING_IDEAS: int = 10

    # ==========================================================================
    # Overnight Tasks
    # ==========================================================================
    OVERNIGHT_JOB_TIMEOUT_SECONDS: float = 600.0
    OVERNIGHT_TOTAL_TIMEOUT_SECONDS: float = 2 * 3600.0
    CHOICE_EXPIRATION_HOURS: int = 24
    INTENT_CLARIFICATION_THRESHOLD: float = 0.7

    # ==========================================================================
    # Notifications
    # ==========================================================================
    NOTIFY_ENABLED: bool = False
    NOTIFY_WEBHOOK_URL: str | None = None
    NOTIFY_WEBHOOK_TOKEN: str | None = None
    NOTIFY_TIMEOUT_SECONDS: float = 30.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    @property
    def output_path(self) -> Path:
        return Path(self.OUTPUT_DIR).expanduser()

    @property
    def memory_path(self) -> Path:
        return Path(self.MEMORY_DIR).expanduser()

    @property
    def workspaces_path(self) -> Path:
        return Path(self.WORKSPACES_DIR).expanduser()

    @property
    def lock_path(self) -> Path:
        return Path(self.LOCK_FILE).expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
