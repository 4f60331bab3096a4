"""Application configuration models."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Watch Order Tracker", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_bearer: str | None = Field(
        default=None,
        alias="TMDB_BEARER",
        validation_alias=AliasChoices("TMDB_BEARER", "TMDB_API_KEY"),
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_url: HttpUrl = Field(
        default="https://image.tmdb.org/t/p/w500", alias="TMDB_IMAGE_URL"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./watchorder.db", alias="DATABASE_URL"
    )
    storage_key: str = Field(default="sw-watch-v2", alias="STORAGE_KEY", min_length=1)
    legacy_storage_key: str = Field(
        default="sw-watch-v1", alias="LEGACY_STORAGE_KEY", min_length=1
    )

    stale_after_days: int = Field(
        default=30, alias="STALE_AFTER_DAYS", ge=1, le=365
    )
    undo_limit: int = Field(default=50, alias="UNDO_LIMIT", ge=0, le=500)

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        """Accept log level names case-insensitively."""

        if value is None:
            return "INFO"
        level = str(value).strip().upper()
        if not level:
            return "INFO"
        if level not in logging.getLevelNamesMapping():
            raise ValueError("Unknown LOG_LEVEL configured")
        return level

    @model_validator(mode="after")
    def _check_storage_keys(self) -> "Settings":
        """Ensure the current and legacy records never share a key."""

        if self.storage_key == self.legacy_storage_key:
            raise ValueError("STORAGE_KEY must differ from LEGACY_STORAGE_KEY")
        return self

    @property
    def tmdb_configured(self) -> bool:
        return bool(self.tmdb_bearer and self.tmdb_bearer.strip())

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
