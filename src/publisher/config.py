"""Configuration models for the schedule dispatcher."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

# Load .env automatically on import (local dev)
load_dotenv()


class DispatchConfig(BaseModel):
    """Scan loop, worker pool and retry policy."""

    scan_interval_seconds: int = Field(default=30, ge=1)
    batch_limit: int = Field(default=100, ge=1)
    worker_pool_size: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: int = Field(default=60, ge=1)
    backoff_max_seconds: int = Field(default=3600, ge=1)
    processing_timeout_seconds: int = Field(default=600, ge=1)
    watchdog_interval_cycles: int = Field(default=10, ge=1)
    publish_timeout_seconds: float = Field(default=15.0, gt=0)


class ChannelApiConfig(BaseModel):
    """Base URLs of the platform APIs used by the bundled adapters."""

    x_api_base_url: str = "https://api.twitter.com"
    linkedin_api_base_url: str = "https://api.linkedin.com"


class Settings(BaseModel):
    """Global settings for the publishing pipeline."""

    database_url: str = "sqlite:///publisher.db"
    log_level: str = "INFO"
    max_schedule_horizon_days: int = Field(default=90, ge=1)
    dispatch: DispatchConfig = DispatchConfig()
    channels: ChannelApiConfig = ChannelApiConfig()

    # "package.module:attribute" import paths for collaborator wiring
    context_resolver_path: Optional[str] = None
    post_repository_path: Optional[str] = None


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def load_settings() -> Settings:
    """Build Settings from environment variables (.env for local dev)."""
    try:
        dispatch = DispatchConfig(
            scan_interval_seconds=_env_int("DISPATCH_SCAN_INTERVAL_SECONDS", 30),
            batch_limit=_env_int("DISPATCH_BATCH_LIMIT", 100),
            worker_pool_size=_env_int("DISPATCH_WORKER_POOL_SIZE", 4),
            max_attempts=_env_int("DISPATCH_MAX_ATTEMPTS", 5),
            backoff_base_seconds=_env_int("DISPATCH_BACKOFF_BASE_SECONDS", 60),
            backoff_max_seconds=_env_int("DISPATCH_BACKOFF_MAX_SECONDS", 3600),
            processing_timeout_seconds=_env_int("DISPATCH_PROCESSING_TIMEOUT_SECONDS", 600),
            watchdog_interval_cycles=_env_int("DISPATCH_WATCHDOG_INTERVAL_CYCLES", 10),
            publish_timeout_seconds=_env_float("PUBLISH_TIMEOUT_SECONDS", 15.0),
        )

        channels = ChannelApiConfig(
            x_api_base_url=os.getenv("X_API_BASE_URL", "https://api.twitter.com"),
            linkedin_api_base_url=os.getenv("LINKEDIN_API_BASE_URL", "https://api.linkedin.com"),
        )

        return Settings(
            database_url=os.getenv("DATABASE_URL", "sqlite:///publisher.db"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            max_schedule_horizon_days=_env_int("SCHEDULE_MAX_HORIZON_DAYS", 90),
            dispatch=dispatch,
            channels=channels,
            context_resolver_path=os.getenv("PUBLISHER_CONTEXT_RESOLVER") or None,
            post_repository_path=os.getenv("PUBLISHER_POST_REPOSITORY") or None,
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid settings: {e}") from e
