"""Configuration management for Toolshelf."""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings


DEFAULT_CATEGORIES = [
    "Automation",
    "AI",
    "CRM",
    "Design",
    "Email",
    "Analytics",
    "Development",
    "Other",
]


class Settings(BaseSettings):
    """Application settings."""

    model_config = ConfigDict(
        env_file=".env" if os.getenv("ENVIRONMENT") != "test" else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow"
    )

    # Application
    app_name: str = "Toolshelf"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./toolshelf.db")

    # Security
    secret_key: str = Field(default="")
    jwt_algorithm: str = Field(default="HS256")
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_audience: Optional[str] = Field(default=None)
    access_token_expire_minutes: int = Field(default=60)
    enable_auth: bool = Field(default=True)
    dev_caller_id: str = Field(
        default="local-dev",
        description="Caller identity used for every request when auth is disabled",
    )

    # AI provider (Gemini)
    gemini_api_key: Optional[str] = Field(default=None)
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta"
    )
    gemini_temperature: float = Field(default=0.3)
    enrich_timeout_seconds: float = Field(default=12.0)

    # Enrichment cache
    enrich_version: int = Field(
        default=1,
        description="Bump when the enrichment prompt or schema changes",
    )
    stale_after_days: int = Field(default=30)
    lock_ttl_seconds: int = Field(default=120)

    # Quotas
    quota_per_minute: int = Field(default=4)
    quota_per_day: int = Field(default=50)
    usage_retention_days: int = Field(default=7)
    usage_prune_interval_seconds: float = Field(default=3600.0)

    # Categories offered to the provider when the caller sends none
    default_categories: List[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))

    # CORS Configuration
    cors_allowed_origins: Optional[str] = Field(
        default=None,
        description="Comma-separated list of allowed CORS origins. Defaults to ['*'] in dev.",
    )

    # Feature Flags
    enable_metrics: bool = Field(default=False)

    @field_validator("secret_key", mode="before")
    @classmethod
    def validate_secret_key(cls, v):
        if not v:
            # Generate a random secret key for development
            import secrets
            return secrets.token_urlsafe(32)
        return v

    @field_validator("quota_per_minute", "quota_per_day", "lock_ttl_seconds", "stale_after_days")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    def get_cors_origins(self) -> List[str]:
        """Parse CORS allowed origins from config."""
        if self.cors_allowed_origins:
            return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]
        # Default: allow all in development
        if self.environment != "production":
            return ["*"]
        return []


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
