"""Configuration settings for the web API."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    premium_model: str = "google/gemini-2.5-flash"
    lite_model: str = "google/gemini-2.5-flash-lite"
    provider_timeout: float = 120.0
    database_url: str = "sqlite:///postlab.db"
    session_cookie_name: str = "postlab.session_token"
    frontend_url: str | None = None
    allow_all_origins: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )
