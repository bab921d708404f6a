"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .entities import ENTITY_KINDS


DEFAULT_REQUIRED_KINDS: tuple[str, ...] = ENTITY_KINDS


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="StashMirror", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./stashmirror.db", alias="DATABASE_URL"
    )

    stash_url: HttpUrl | None = Field(
        default=None,
        alias="STASH_URL",
        validation_alias=AliasChoices("STASH_URL", "STASH_GRAPHQL_URL"),
    )
    stash_api_key: str | None = Field(default=None, alias="STASH_API_KEY")
    stash_name: str = Field(default="Default", alias="STASH_NAME")

    sync_interval_seconds: int = Field(default=3_600, alias="SYNC_INTERVAL", ge=60)
    sync_page_size: int = Field(default=250, alias="SYNC_PAGE_SIZE", ge=1, le=5_000)
    sync_on_startup: bool = Field(default=True, alias="SYNC_ON_STARTUP")
    required_kinds: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_REQUIRED_KINDS, alias="REQUIRED_KINDS"
    )

    source_timeout_seconds: float = Field(default=30.0, alias="SOURCE_TIMEOUT", gt=0)
    source_max_retries: int = Field(default=3, alias="SOURCE_MAX_RETRIES", ge=0, le=10)

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("required_kinds", mode="before")
    @classmethod
    def _parse_required_kinds(cls, value: object) -> tuple[str, ...]:
        """Normalise the kinds that gate cache readiness."""

        if value is None:
            return DEFAULT_REQUIRED_KINDS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("REQUIRED_KINDS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            kind = entry.lower()
            if not kind:
                continue
            if kind not in ENTITY_KINDS:
                raise ValueError("Unknown entity kinds configured")
            if kind not in cleaned:
                cleaned.append(kind)
        if not cleaned:
            return DEFAULT_REQUIRED_KINDS
        return tuple(cleaned)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
