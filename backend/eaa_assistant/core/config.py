"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Storage backend: "supabase" in deployments, "memory" for local runs and tests
    STORAGE_BACKEND: Literal["supabase", "memory"] = "supabase"

    # Language model (routed through LiteLLM)
    LLM_API_KEY: SecretStr = SecretStr("")
    CHAT_MODEL: str = "gpt-4o-mini"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    ANSWER_TIMEOUT_SECONDS: float = 30.0
    ANSWER_MAX_TOKENS: int = 1500

    # Resend Email Configuration (escalation notices)
    RESEND_API_KEY: SecretStr = SecretStr("")
    FROM_EMAIL: str = "EAA Assistant <assistant@eaa-assistant.eu>"
    ESCALATION_EMAIL: str = ""

    # Escalation policy
    ESCALATION_MESSAGE_THRESHOLD: int = 20
    FRUSTRATION_MIN_LEVEL: float = 0.6
    FRUSTRATION_MIN_CONFIDENCE: float = 0.7
    FRUSTRATION_MIN_TRIGGERS: int = 1

    # Fact extraction
    FACT_CONFIDENCE_FLOOR: float = 0.5

    # Background work queue
    BACKGROUND_WORKERS: int = 2
    BACKGROUND_MAX_ATTEMPTS: int = 2

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("FRUSTRATION_MIN_LEVEL", "FRUSTRATION_MIN_CONFIDENCE", "FACT_CONFIDENCE_FLOOR")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Thresholds are probabilities."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def is_configured(self) -> bool:
        """Check if required settings are configured."""
        if self.STORAGE_BACKEND == "memory":
            return bool(self.LLM_API_KEY.get_secret_value())
        return bool(
            self.SUPABASE_URL
            and self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
            and self.LLM_API_KEY.get_secret_value()
        )

    @property
    def email_configured(self) -> bool:
        """Check if escalation emails can actually be delivered."""
        return bool(self.RESEND_API_KEY.get_secret_value() and self.ESCALATION_EMAIL)

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {"LLM_API_KEY": self.LLM_API_KEY.get_secret_value()}
        if self.STORAGE_BACKEND == "supabase":
            required_secrets["SUPABASE_URL"] = self.SUPABASE_URL
            required_secrets["SUPABASE_SERVICE_ROLE_KEY"] = (
                self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value()
            )
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Startup validation is enforced only in production so that tests and
    local tooling can import the package without secrets.

    Returns:
        Settings instance with validated configuration.

    Raises:
        ValueError: If required secrets are missing in production.
    """
    settings = Settings()
    if settings.is_production:
        settings.validate_startup()
    elif not settings.is_configured:
        logger.warning("Settings incomplete - external services will be unavailable")
    return settings
