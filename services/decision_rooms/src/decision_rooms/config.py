"""Configuration for the Decision Rooms service."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_version: str = Field("1.0.0", description="Semantic version returned by health endpoints.")
    jwt_secret: str = Field(
        "change-me-decision-rooms-secret",
        min_length=16,
        description="Shared secret used to verify participant access tokens.",
        alias="JWT_SECRET",
    )
    jwt_algorithm: Literal["HS256"] = Field("HS256", description="JWT signature algorithm")
    jwt_ttl_seconds: int = Field(3600, ge=60, le=86400, description="Lifetime of locally issued tokens")
    database_url: str | None = Field(
        None,
        description="PostgreSQL DSN for shared room storage (in-memory when unset)",
        alias="DATABASE_URL",
    )
    database_fallback_to_memory: bool = Field(
        True,
        description="Allow falling back to the in-memory store when Postgres is unavailable",
        alias="DATABASE_FALLBACK_TO_MEMORY",
    )
    quest_catalog_path: str = Field(
        "data/quests",
        description="Directory with YAML decision scripts",
        alias="QUEST_CATALOG_PATH",
    )
    inactive_room_days: int = Field(
        7,
        ge=1,
        description="IN_PROGRESS rooms without activity for this many days are closed by the sweep",
        alias="INACTIVE_ROOM_DAYS",
    )
    badge_workers: int = Field(
        2,
        ge=0,
        le=32,
        description="Worker threads for background badge evaluation (0 evaluates inline)",
        alias="BADGE_WORKERS",
    )
    operator_api_key: str | None = Field(
        None,
        description="Static key for operator endpoints (sweep). Operator endpoints are disabled when unset.",
        alias="OPERATOR_API_KEY",
    )

    # Optional in-app rate limit (dev/staging)
    rate_limit_enabled: bool = Field(
        False,
        description="Enable in-app rate limit for write endpoints",
        alias="RATE_LIMIT_ENABLED",
    )
    rate_limit_rps: float = Field(
        5.0,
        ge=0.1,
        description="Requests per second per key",
        alias="RATE_LIMIT_RPS",
    )
    rate_limit_burst: int = Field(
        10,
        ge=1,
        description="Burst capacity for token bucket",
        alias="RATE_LIMIT_BURST",
    )

    enable_otel: bool = Field(False, description="Export traces over OTLP", alias="ENABLE_OTEL")
    enable_metrics: bool = Field(False, description="Expose Prometheus /metrics", alias="ENABLE_METRICS")


class HealthPayload(BaseModel):
    """Health-check response payload."""

    status: Literal["ok"]
    api_version: str


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance.

    Returns:
        Settings: Loaded environment settings.
    """

    return Settings()
