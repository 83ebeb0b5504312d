"""
Configuration management via environment variables.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Security settings
    max_login_attempts: int = Field(
        default=5,
        gt=0,
        description="Login attempts allowed per email within the timeout window",
    )
    login_timeout_minutes: int = Field(
        default=15,
        gt=0,
        description="Length of the login rate-limit window in minutes",
    )
    enable_security_logging: bool = Field(
        default=False,
        description="Persist security events even in development",
    )
    app_env: str = Field(
        default="development",
        description="Deployment environment (development, staging, production)",
    )

    # Public IP lookup for security events
    ip_lookup_url: str = Field(
        default="https://api.ipify.org?format=json",
        description="Endpoint returning {\"ip\": ...} for the caller",
    )
    ip_lookup_timeout: float = Field(
        default=3.0,
        description="Timeout in seconds for the public IP lookup",
    )

    # Database settings
    database_url: str | None = Field(
        default=None,
        description="PostgreSQL URL for the document store (in-memory when unset)",
    )

    # Session settings
    secret_key: str = Field(
        default="change-me-to-a-random-string-at-least-32-chars",
        description="Secret key for signing session cookies",
    )
    session_cookie_name: str = Field(
        default="guard_session",
        description="Name of the session cookie",
    )
    session_max_age: int = Field(
        default=86400,
        description="Session max age in seconds (default 24 hours)",
    )

    @computed_field
    @property
    def login_timeout_seconds(self) -> float:
        return float(self.login_timeout_minutes * 60)

    @computed_field
    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @computed_field
    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
