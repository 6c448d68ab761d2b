from __future__ import annotations

import os
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from yoink.logging import get_logger

logger = get_logger(__name__)


class ClockMode(str, Enum):
    """Clock implementations selectable at startup."""

    SYSTEM = "system"
    FAKE = "fake"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_list(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/yoink", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory store, fake clock allowed).",
    )

    # Sessions
    session_cookie_name: str = env_field("user_session", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_cookie_samesite: Literal["strict", "lax", "none"] = env_field(
        "lax", "SESSION_COOKIE_SAMESITE"
    )
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Sliding session lifetime applied on creation and on every refresh",
    )
    session_refresh_threshold_minutes: int = env_field(
        24 * 60,
        "SESSION_REFRESH_THRESHOLD_MINUTES",
        description="Idle time that must elapse before a refresh write is performed",
    )
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="Interval of the background sweep deleting expired sessions; 0 disables it",
    )

    # API tokens
    max_tokens_per_user: int = env_field(10, "MAX_TOKENS_PER_USER")
    seed_token: str | None = env_field(None, "SEED_TOKEN")

    # Argon2 cost parameters for token secrets
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    clock: ClockMode = env_field(ClockMode.SYSTEM, "CLOCK")
    fake_clock_start: datetime | None = env_field(None, "FAKE_CLOCK_START")

    log_level: str = env_field("INFO", "LOG_LEVEL")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173", "http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        return _parse_list(value)

    @field_validator("clock")
    @classmethod
    def _validate_clock(cls, value: ClockMode) -> ClockMode:
        return ClockMode(value)

    @field_validator(
        "session_ttl_minutes", "session_refresh_threshold_minutes", "max_tokens_per_user"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_session_windows(self) -> "Settings":
        if self.session_refresh_threshold_minutes >= self.session_ttl_minutes:
            raise ValueError(
                "SESSION_REFRESH_THRESHOLD_MINUTES must be shorter than SESSION_TTL_MINUTES; "
                "otherwise sessions expire before they are ever refreshed"
            )
        if self.clock == ClockMode.FAKE and not self.test_mode:
            logger.warning("fake_clock_outside_test_mode")
        return self

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.session_ttl_minutes)

    @property
    def session_refresh_threshold(self) -> timedelta:
        return timedelta(minutes=self.session_refresh_threshold_minutes)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
