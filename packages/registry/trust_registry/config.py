"""
Registry configuration.

Settings come from environment variables (prefix ``TRUST_``) or a ``.env``
file, and can alternatively be loaded from a YAML file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Trust registry configuration."""

    model_config = SettingsConfigDict(env_prefix="TRUST_", env_file=".env", extra="ignore")

    # Persistence
    gateway_backend: Literal["memory", "sqlite", "redis"] = "memory"
    sqlite_path: str = "./data/trust_registry.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "trust:"

    # Access tokens
    token_prefix: str = "tr_at_"
    token_secret_bytes: int = Field(default=32, ge=16, le=128)
    token_allowed_scopes: list[str] = ["user:all", "site-admin:sudo"]
    token_default_ttl_seconds: Optional[int] = Field(default=None, ge=1)
    token_last_used_interval_seconds: int = Field(default=60, ge=0)

    # Invitations
    invitation_default_ttl_hours: int = Field(default=168, ge=1)

    # Compare-and-set retries before giving up with a conflict
    cas_max_attempts: int = Field(default=8, ge=1)

    # Certificate cache
    cert_renewal_margin_days: float = Field(default=30, ge=0)
    cert_cache_max_entries: int = Field(default=1000, ge=1)
    cert_fetch_timeout_seconds: float = Field(default=30.0, gt=0)

    # Logging
    log_level: Literal["critical", "error", "warning", "info", "debug"] = "info"
    log_format: Literal["json", "text"] = "json"

    @field_validator("log_level", mode="before")
    @classmethod
    def _lowercase_level(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("token_prefix")
    @classmethod
    def _prefix_is_url_safe(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c in "_-" for c in v):
            raise ValueError("token_prefix must be non-empty and URL-safe")
        return v


def load_settings(path: str | Path) -> Settings:
    """Load and validate registry settings from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return Settings.model_validate(raw)
