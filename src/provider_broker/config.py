"""Provider Broker: Application Configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provider_broker.domain.enums import RateLimitAlgorithm


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ConfigBackend(str, enum.Enum):
    MEMORY = "memory"
    DATABASE = "database"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "provider-broker"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    json_logs: bool | None = None  # None = JSON in production only
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ── HTTP rate limiting (per client IP) ───────────────────
    api_rate_limit_per_minute: int = 600  # 0 = unlimited

    # ── Provider configuration source ────────────────────────
    config_backend: ConfigBackend = ConfigBackend.MEMORY
    providers_file: str | None = None

    # ── Database ─────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./provider_broker.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # ── Rate limiting (per provider) ─────────────────────────
    rate_limit_algorithm: RateLimitAlgorithm = RateLimitAlgorithm.TOKEN_BUCKET
    rate_limit_window_seconds: float = 60.0
    rate_limit_wait_seconds: float = 0.0

    # ── Connection pool ──────────────────────────────────────
    pool_max_connections: int = 10
    pool_min_connections: int = 2
    pool_max_idle_seconds: float = 300.0
    pool_acquire_timeout_seconds: float = 30.0
    pool_sweep_interval_seconds: float = 60.0

    # ── Sessions ─────────────────────────────────────────────
    session_timeout_minutes: float = 30.0
    max_sessions_per_service: int = 100
    session_sweep_interval_seconds: float = 300.0

    # ── Orchestration ────────────────────────────────────────
    default_timeout_seconds: float = 120.0
    health_check_timeout_seconds: float = 5.0
    retry_policy_keywords: dict[str, str] | None = None  # None = built-in map
    default_retry_policy: str = "moderate"
    cache_ttl_seconds: float = 300.0  # 0 = disabled
    cache_max_entries: int = 1024

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def use_json_logs(self) -> bool:
        return self.is_production if self.json_logs is None else self.json_logs

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("database_url")
    @classmethod
    def _validate_database_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> Settings:
        if self.pool_min_connections > self.pool_max_connections:
            raise ValueError("pool_min_connections must not exceed pool_max_connections")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
