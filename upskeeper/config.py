"""
Configuration management for upskeeper.

This module uses Pydantic's BaseSettings to manage process-level
configuration through environment variables. User-facing options live in
the persisted AppConfig (see ``upskeeper.core.config_schema``).
"""
import os
import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR_NAME = "upskeeper"
TRUTHY_VALUES = {"1", "true", "yes"}
DEBUG_LEVELS = ("off", "error", "warn", "info", "debug", "trace")


def default_data_dir() -> str:
    """Per-OS user data directory."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
    elif sys.platform == "darwin":
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return str(Path(base) / APP_DIR_NAME)


class Settings(BaseSettings):
    """
    Process settings.

    These settings are loaded from environment variables prefixed with
    ``UPSKEEPER_``, except the two startup overrides which keep their bare
    names.
    """

    DATA_DIR: str = Field(default_factory=default_data_dir)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"

    # API server
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8765

    # Startup overrides
    RESET_SETTINGS_ON_START: str | None = Field(None, validation_alias="RESET_SETTINGS_ON_START")
    DEBUG_LEVEL_ON_START: str | None = Field(None, validation_alias="DEBUG_LEVEL_ON_START")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        env_prefix="UPSKEEPER_",
        extra="ignore",
    )

    @property
    def reset_settings_on_start(self) -> bool:
        value = (self.RESET_SETTINGS_ON_START or "").strip().lower()
        return value in TRUTHY_VALUES

    @property
    def debug_level_on_start(self) -> str | None:
        value = (self.DEBUG_LEVEL_ON_START or "").strip().lower()
        return value if value in DEBUG_LEVELS else None

    @property
    def settings_path(self) -> str:
        return os.path.join(self.DATA_DIR, "app-settings.json")


def get_settings() -> Settings:
    return Settings()
