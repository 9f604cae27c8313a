from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


ROOT_DIR = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    app_name: str = "Prompt Coach API"
    version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"

    cors_origins: list[str] = ["http://localhost:4200", "http://localhost:4201"]

    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GEMINI_API_SECRET", "GEMINI_API_KEY", "gemini_api_key"),
    )
    gemini_model: str = "gemini-2.5-flash"
    gemini_lite_model: str = "gemini-2.5-flash-lite"

    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPEN_AI_SECRET", "OPENAI_API_KEY", "openai_api_key"),
    )
    openai_model: str = "gpt-4o-mini"
    openai_timeout_seconds: float = 60.0

    cache_ttl_seconds: float = 600.0

    tag_min_words: int = 3
    tag_max_words: int = 4
    tags_temperature: float = 0.7
    analyze_temperature: float = 0.3

    class Config:
        env_file = (
            ".env",
            str(ROOT_DIR / ".env"),
            str(ROOT_DIR / "apps" / "api" / ".env"),
        )
        env_prefix = ""
        extra = "ignore"


def _clean_api_key(value: str) -> str:
    cleaned = value.strip().strip('"').strip("'")
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned.split(" ", 1)[1].strip()
    return cleaned


def is_production() -> bool:
    return settings.environment.lower().strip() in {"production", "prod"}


settings = Settings()
if settings.gemini_api_key:
    settings.gemini_api_key = _clean_api_key(settings.gemini_api_key) or None
if settings.openai_api_key:
    settings.openai_api_key = _clean_api_key(settings.openai_api_key) or None
