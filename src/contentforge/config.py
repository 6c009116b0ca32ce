"""ContentForge AI gateway configuration."""

from __future__ import annotations

import enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from contentforge.shared.providers.rate_gate import parse_steps


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "contentforge"
    app_env: Environment = Environment.DEVELOPMENT
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ── Gemini ───────────────────────────────────────────────
    # Comma-separated; one key per Google Cloud project gives independent quotas.
    gemini_api_keys: str = ""
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_fallback_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # ── Key pool ─────────────────────────────────────────────
    key_cooldown_base_seconds: float = 60.0
    key_cooldown_cap_multiplier: float = 5.0
    key_daily_exhaustion_seconds: float = 3600.0
    # max-alive-count:seconds steps, "*" = any larger pool
    rate_gate_intervals: str = "1:4.5,3:2.0,6:1.0,*:0.5"

    # ── Dispatch ─────────────────────────────────────────────
    dispatch_max_attempts_cap: int = Field(default=8, ge=1)
    dispatch_max_cooldown_wait_seconds: float = 30.0
    dispatch_throttle_backoff_base: float = 2.0
    dispatch_throttle_backoff_max: float = 15.0
    dispatch_server_backoff_base: float = 3.0
    dispatch_server_backoff_max: float = 20.0
    dispatch_history_size: int = 200

    # ── Timeouts ─────────────────────────────────────────────
    generation_timeout_seconds: float = 60.0
    generation_timeout_max_seconds: float = 120.0
    stream_idle_timeout_seconds: float = 120.0

    # ── Load shaping ─────────────────────────────────────────
    batch_size: int = Field(default=3, ge=1)
    batch_delay_seconds: float = 1.0

    # ── Admin ────────────────────────────────────────────────
    admin_secret: str = ""
    daily_reset_enabled: bool = True
    daily_reset_timezone: str = "America/Los_Angeles"
    daily_reset_hour: int = Field(default=0, ge=0, le=23)

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    def credential_list(self) -> list[str]:
        """Configured API keys: the multi-key list, else the single key. Trimmed, de-duplicated."""
        keys = [k.strip() for k in self.gemini_api_keys.split(",") if k.strip()]
        if not keys and self.gemini_api_key.strip():
            keys = [self.gemini_api_key.strip()]
        return list(dict.fromkeys(keys))

    def rate_gate_steps(self) -> tuple[tuple[float, float], ...]:
        return parse_steps(self.rate_gate_intervals)

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("rate_gate_intervals")
    @classmethod
    def _validate_rate_gate(cls, v: str) -> str:
        parse_steps(v)
        return v

    @field_validator("daily_reset_timezone")
    @classmethod
    def _validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {v}") from exc
        return v

    @model_validator(mode="after")
    def _guard_production_secrets(self) -> Settings:
        """Prevent production from exposing an unauthenticated reset endpoint."""
        if self.app_env == Environment.PRODUCTION and not self.admin_secret:
            raise ValueError("admin_secret must be set in production")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
