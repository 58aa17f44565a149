"""Bloodwatch configuration settings."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

MIN_TIMEOUT_S = 10
MAX_TIMEOUT_S = 120


def _int_env(var_name: str, default: int) -> int:
    raw = os.getenv(var_name, "").strip()
    return int(raw) if raw else default


def _optional_int_env(var_name: str, default: int) -> int | None:
    raw = os.getenv(var_name)
    if raw is None:
        return default
    raw = raw.strip()
    return int(raw) if raw else None


class TimeoutConfig(BaseModel):
    """Fetch timeout applied when a source has no rule set of its own."""

    default_fetch_timeout_s: int = Field(
        default_factory=lambda: _int_env("BLOODWATCH_FETCH_TIMEOUT_S", 30),
        validate_default=True,
    )

    @field_validator("default_fetch_timeout_s")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if not MIN_TIMEOUT_S <= value <= MAX_TIMEOUT_S:
            raise ValueError(
                f"default_fetch_timeout_s must be between {MIN_TIMEOUT_S} and {MAX_TIMEOUT_S}"
            )
        return value


class BrowserConfig(BaseModel):
    """Browser used to retrieve source pages."""

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str | None = None
    locale: str = "pl-PL"


class PipelineConfig(BaseModel):
    """Where snapshots, run records and signal ledgers are written."""

    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("BLOODWATCH_DATA_DIR", "./data"))
    )
    debug_mode: bool = False


class RetentionConfig(BaseModel):
    """How many completed runs the repository keeps, and for how long."""

    max_completed_runs: int | None = Field(
        default_factory=lambda: _optional_int_env("BLOODWATCH_MAX_COMPLETED_RUNS", 200)
    )
    ttl_seconds: int | None = Field(
        default_factory=lambda: _optional_int_env("BLOODWATCH_RUN_TTL_SECONDS", 604800)
    )


class HealthConfig(BaseModel):
    """Thresholds for the global scraper health classification."""

    window_size: int = Field(
        default_factory=lambda: _int_env("BLOODWATCH_HEALTH_WINDOW", 5), validate_default=True
    )
    degraded_after: int = 2
    failed_after: int = 3

    @field_validator("window_size")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BLOODWATCH_HEALTH_WINDOW must be >= 1")
        return value


class URLPolicyConfig(BaseModel):
    """Which target URLs the fetcher is allowed to contact."""

    allowed_schemes: list[str] = Field(default_factory=lambda: ["http", "https"])
    block_private_ips: bool = True
    block_local_hostnames: bool = True


class OrchestratorConfig(BaseModel):
    """Concurrency limits for a single run."""

    max_concurrent_attempts: int = Field(
        default_factory=lambda: _int_env("BLOODWATCH_MAX_CONCURRENT_ATTEMPTS", 4),
        validate_default=True,
    )

    @field_validator("max_concurrent_attempts")
    @classmethod
    def _validate_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("BLOODWATCH_MAX_CONCURRENT_ATTEMPTS must be >= 1")
        return value


class BloodwatchConfig(BaseModel):
    """Root configuration for the scraping core."""

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    url_policy: URLPolicyConfig = Field(default_factory=URLPolicyConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("BLOODWATCH_LOG_LEVEL", "INFO"))
