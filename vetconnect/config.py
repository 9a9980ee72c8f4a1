"""Application configuration and settings helpers."""
from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Centralized configuration loaded from environment variables."""

    app_name: str = Field(default="VetConnect")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    public_base_url: str = Field(default="http://localhost:8000")
    database_url: str = Field(default="sqlite:///./data/vetconnect.db")

    jwt_secret_key: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    access_token_exp_minutes: int = Field(default=60)
    access_token_cookie_name: str = Field(default="access_token")
    cookie_domain: str | None = Field(default=None)
    cookie_secure: bool = Field(default=False)
    cookie_samesite: str = Field(default="lax")

    email_from: str = Field(default="no-reply@vetconnect.local")
    email_outbox_dir: str | None = Field(default="./data/outbox")

    argon2_time_cost: int = Field(default=3)
    argon2_memory_cost: int = Field(default=65536)
    argon2_parallelism: int = Field(default=2)
    password_min_length: int = Field(default=6)

    mfa_issuer: str = Field(default="VetConnect")
    mfa_challenge_exp_minutes: int = Field(default=5)
    email_otp_exp_minutes: int = Field(default=10)

    rate_limit_max_attempts: int = Field(default=5)
    rate_limit_base_lockout_ms: int = Field(default=30_000)
    rate_limit_max_lockout_ms: int = Field(default=900_000)
    rate_limit_key_prefix: str = Field(default="auth_rate_limit")
    rate_limit_store_ttl_seconds: int = Field(default=1800)
    rate_limit_sweep_interval_seconds: int = Field(default=60)

    storage_dir: str = Field(default="./data/storage")
    signed_url_exp_seconds: int = Field(default=3600)
    upload_max_bytes: int = Field(default=5 * 1024 * 1024)
    upload_allowed_mime_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"]
    )

    presence_channel_key: str = Field(default="vets")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance for the application."""

    return Settings()
