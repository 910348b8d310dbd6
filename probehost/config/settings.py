"""probehost configuration via environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from probehost import __version__


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROBEHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Locations ---
    APP_DATA_DIR: Path = Path("~/.local/share/probehost")
    PLUGINS_DIR: Path | None = None
    INSTALL_BUNDLED: bool = True

    # --- Identity ---
    APP_VERSION: str = __version__

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    # --- Execution ---
    MAX_WORKERS: int = Field(default=4, ge=1)
    SANDBOX_MEMORY_LIMIT_MB: int = Field(default=256, ge=0)

    @field_validator("APP_DATA_DIR", "PLUGINS_DIR", mode="after")
    @classmethod
    def _expand_home(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        level = str(v).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    def resolved_plugins_dir(self) -> Path:
        """Plugins directory, defaulting to ``<APP_DATA_DIR>/plugins``."""
        return self.PLUGINS_DIR or self.APP_DATA_DIR / "plugins"


settings = Settings()
