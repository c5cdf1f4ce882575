"""Application settings resolved from the environment.

Settings are built once by the entry point and passed explicitly to the
services and the app factory. Nothing reads the environment after startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from fieldforge.db.config import DatabaseConfig

_TRUTHY = ("1", "true", "yes", "on")

DEV_SECRET_KEY = "dev-secret-key-change-in-production"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass
class Settings:
    """Runtime configuration for the API, services and CLI."""

    database: DatabaseConfig
    secret_key: str = DEV_SECRET_KEY
    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60
    token_retention_days: int = 30
    dev_auth_enabled: bool = False
    default_page_size: int = 50
    max_page_size: int = 200
    hash_rounds: int | None = None
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])
    metadata_path: Path | None = None

    @classmethod
    def from_env(cls, base_path: Path | None = None) -> Settings:
        """Create settings from FIELDFORGE_* environment variables."""
        hash_rounds = os.environ.get("FIELDFORGE_HASH_ROUNDS")
        cors = os.environ.get("FIELDFORGE_CORS_ORIGINS")
        metadata_path = os.environ.get("FIELDFORGE_METADATA_PATH")

        settings = cls(
            database=DatabaseConfig.from_env(base_path),
            secret_key=os.environ.get("FIELDFORGE_SECRET_KEY", DEV_SECRET_KEY),
            access_token_ttl=_env_int("FIELDFORGE_ACCESS_TOKEN_TTL", 15 * 60),
            refresh_token_ttl=_env_int("FIELDFORGE_REFRESH_TOKEN_TTL", 7 * 24 * 60 * 60),
            token_retention_days=_env_int("FIELDFORGE_TOKEN_RETENTION_DAYS", 30),
            dev_auth_enabled=_env_bool("FIELDFORGE_DEV_AUTH_ENABLED"),
            default_page_size=_env_int("FIELDFORGE_DEFAULT_PAGE_SIZE", 50),
            max_page_size=_env_int("FIELDFORGE_MAX_PAGE_SIZE", 200),
            hash_rounds=int(hash_rounds) if hash_rounds else None,
            log_level=os.environ.get("FIELDFORGE_LOG_LEVEL", "INFO"),
            metadata_path=Path(metadata_path) if metadata_path else None,
        )
        if cors:
            settings.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject settings combinations that cannot work."""
        if self.default_page_size < 1:
            raise ValueError("default_page_size must be at least 1")
        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be >= default_page_size")
        if self.access_token_ttl <= 0 or self.refresh_token_ttl <= 0:
            raise ValueError("token lifetimes must be positive")
        if self.token_retention_days < 0:
            raise ValueError("token_retention_days must not be negative")
