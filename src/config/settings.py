"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/relay.db",
        description="SQLAlchemy connection string.",
    )

    # Migrations / schema
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )

    # Relay (TURN) credentials
    turn_secret: str = Field(
        default="change-me",
        description="Shared secret used to sign time-limited TURN credentials.",
    )
    turn_ttl_seconds: int = Field(default=3600, gt=0)
    turn_uris: list[str] = Field(
        default_factory=lambda: [
            "turn:openrelay.metered.ca:80",
            "turn:openrelay.metered.ca:443",
            "turn:openrelay.metered.ca:443?transport=tcp",
        ]
    )
    stun_uris: list[str] = Field(
        default_factory=lambda: [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ]
    )
    turn_fallback_username: str = Field(default="openrelayproject")
    turn_fallback_password: str = Field(default="openrelayproject")
    turn_refresh_buffer_seconds: int = Field(
        default=300,
        description="Credentials are re-fetched this many seconds before they expire.",
    )

    # Signaling client
    signaling_url: str = Field(default="ws://localhost:8000/ws")
    presence_query_timeout_seconds: float = Field(default=3.0, gt=0)

    # Quality control
    stats_interval_seconds: float = Field(default=1.0, gt=0)
    stats_save_interval_seconds: float = Field(default=3.0, gt=0)
    adaptation_cooldown_ms: int = Field(default=3000, ge=0)
    telemetry_max_samples: int = Field(default=300, gt=0)

    @field_validator("turn_uris", "stun_uris")
    @classmethod
    def strip_uris(cls, value: list[str]) -> list[str]:
        return [uri.strip() for uri in value if uri.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
