from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Fail fast if production is running with insecure defaults."""
        if self.app_env != "development":
            if self.jwt_secret_key == "change-me-in-production":
                raise ValueError(
                    "JWT_SECRET_KEY must be changed from default in non-development environments"
                )
        return self

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/excel_analytics"
    db_auto_create: bool = True

    # Auth (tokens are issued by the identity service, verified here)
    jwt_secret_key: str = "change-me-in-production"

    # Insight providers, tried in this order
    insight_provider_order: str = "openai,gemini"
    insight_prompt_sample_rows: int = 20
    insight_temperature: float = 0.3
    insight_max_tokens: int = 1000
    insight_timeout_seconds: float = 30.0

    # OpenAI API
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_models: str = "gpt-4o-mini,gpt-3.5-turbo"

    # Gemini API
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_models: str = "gemini-1.5-flash,gemini-1.5-pro,gemini-pro"

    # File Storage
    upload_dir: str = "./data/uploads"
    max_file_size_mb: int = 10
    sample_row_count: int = 10
    pipeline_concurrency: int = 4

    # App
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:5173"


def split_csv(value: str) -> list[str]:
    """Split a comma-separated setting into its non-empty, stripped parts."""
    return [part.strip() for part in value.split(",") if part.strip()]


settings = Settings()
