"""Configuration management using Pydantic Settings."""

import sys
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_interpreters() -> dict[str, list[str]]:
    return {
        ".ps1": ["pwsh", "-NoProfile", "-NonInteractive", "-File"],
        ".py": [sys.executable],
        ".sh": ["bash"],
    }


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Discovery
    orchestra_scripts_root: str = Field(
        default="./automation-scripts",
        description="Root directory scanned for NNNN_* automation scripts",
    )
    orchestra_manifest_path: str = Field(
        default="./orchestration/dependencies.json",
        description="Feature dependency manifest (JSON or YAML)",
    )
    orchestra_playbooks_dir: str = Field(
        default="./orchestration/playbooks",
        description="Directory holding playbook definitions",
    )

    # Output
    orchestra_reports_dir: str = Field(
        default="./reports",
        description="Directory for persisted run reports",
    )
    orchestra_log_dir: str = Field(
        default="./logs",
        description="Directory for rotated log files",
    )
    orchestra_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Execution
    orchestra_max_concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Worker pool size for parallel-eligible stages",
    )
    orchestra_task_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Default per-task timeout in seconds",
    )
    orchestra_kill_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Grace period between terminate and kill",
    )
    orchestra_continue_on_error: bool = Field(
        default=False,
        description="Default ContinueOnError policy",
    )
    orchestra_enforce_admin: bool = Field(
        default=False,
        description="Refuse to launch RequiresAdmin tasks when not elevated",
    )
    orchestra_working_dir: str | None = Field(
        default=None,
        description="Working directory for child processes (defaults to cwd)",
    )
    orchestra_interpreters: dict[str, list[str]] = Field(
        default_factory=_default_interpreters,
        description="Script suffix -> launcher argv prefix",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.orchestra_max_concurrency
        4
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
