from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AnyHttpUrl, AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Database settings are optional; when any of host, user or name is missing
    the shared ``Database`` helper falls back to a local SQLite file.
    """

    app_name: str = Field(default="Ticket Automation", validation_alias="APP_NAME")
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV"),
    )
    version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    database_host: str | None = Field(default=None, validation_alias="DB_HOST")
    database_user: str | None = Field(default=None, validation_alias="DB_USER")
    database_password: str | None = Field(default=None, validation_alias="DB_PASSWORD")
    database_name: str | None = Field(default=None, validation_alias="DB_NAME")
    servicenow_base_url: AnyHttpUrl | None = Field(
        default=None, validation_alias="SERVICENOW_BASE_URL"
    )
    servicenow_username: str | None = Field(
        default=None, validation_alias="SERVICENOW_USERNAME"
    )
    servicenow_password: str | None = Field(
        default=None, validation_alias="SERVICENOW_PASSWORD"
    )
    servicenow_timeout: float = Field(default=30.0, validation_alias="SERVICENOW_TIMEOUT")
    default_max_retries: int = Field(default=3, ge=0, validation_alias="DEFAULT_MAX_RETRIES")
    sync_stale_minutes: int = Field(default=5, ge=1, validation_alias="SYNC_STALE_MINUTES")
    sync_concurrency: int = Field(default=5, ge=1, validation_alias="SYNC_CONCURRENCY")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file_path: Path | None = Field(default=None, validation_alias="LOG_FILE_PATH")

    @field_validator("servicenow_base_url", "log_file_path", mode="before")
    @classmethod
    def _empty_string_to_none(cls, value):  # type: ignore[override]
        """Coerce blank environment variables to ``None`` so optional values stay optional."""

        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
