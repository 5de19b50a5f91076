"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS: tuple[str, ...] = ("http://localhost:5173",)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="StreamPicks", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    allowed_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_ALLOWED_ORIGINS, alias="ALLOWED_ORIGINS"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")
    tmdb_timeout_seconds: float = Field(
        default=15.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )

    openrouter_api_key: str | None = Field(
        default=None, alias="OPENROUTER_API_KEY"
    )
    openrouter_api_url: HttpUrl = Field(
        default="https://openrouter.ai/api/v1", alias="OPENROUTER_API_URL"
    )
    openrouter_filter_model: str = Field(
        default="openai/gpt-4o-mini", alias="OPENROUTER_FILTER_MODEL"
    )
    openrouter_curator_model: str = Field(
        default="openai/gpt-4o-mini", alias="OPENROUTER_CURATOR_MODEL"
    )
    openrouter_narrator_model: str = Field(
        default="x-ai/grok-4.1-fast", alias="OPENROUTER_NARRATOR_MODEL"
    )
    openrouter_timeout_seconds: float = Field(
        default=60.0, alias="OPENROUTER_TIMEOUT", gt=0, le=600
    )

    default_region: str = Field(
        default="US", alias="DEFAULT_REGION", min_length=2, max_length=2
    )
    candidate_limit: int = Field(default=30, alias="CANDIDATE_LIMIT", ge=1, le=100)
    provider_limit: int = Field(default=30, alias="PROVIDER_LIMIT", ge=1, le=200)

    rate_limit: int = Field(default=20, alias="RATE_LIMIT", ge=1)
    rate_limit_window_seconds: float = Field(
        default=60.0, alias="RATE_LIMIT_WINDOW", gt=0
    )
    rate_limit_sweep_seconds: float = Field(
        default=300.0, alias="RATE_LIMIT_SWEEP", gt=0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _parse_allowed_origins(cls, value: object) -> tuple[str, ...]:
        """Normalise CORS origins supplied as a comma separated string."""

        if value is None:
            return DEFAULT_ALLOWED_ORIGINS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("ALLOWED_ORIGINS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            origin = entry.rstrip("/")
            if origin and origin not in cleaned:
                cleaned.append(origin)
        if not cleaned:
            return DEFAULT_ALLOWED_ORIGINS
        return tuple(cleaned)

    @field_validator("default_region", mode="after")
    @classmethod
    def _upper_region(cls, value: str) -> str:
        return value.upper()

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
