"""Configuration management for the dispatch service."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # State Backend
    state_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Record store backend"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Location Ingest
    max_fix_accuracy_m: float = Field(
        default=100.0, gt=0, description="Coarser fixes than this are rejected"
    )
    clock_skew_tolerance_seconds: float = Field(
        default=5.0, ge=0, description="Allowed client clock lead"
    )
    location_history_size: int = Field(
        default=20, ge=0, description="Accepted positions kept per driver"
    )

    # Staleness
    location_stale_after_seconds: float = Field(
        default=120.0, gt=0, description="Silence before a driver is taken offline"
    )
    staleness_sweep_interval_seconds: float = Field(
        default=15.0, gt=0, description="Staleness monitor interval"
    )

    # Dispatch
    preferred_search_radius_km: float = Field(
        default=5.0, gt=0, description="Initial driver search radius"
    )
    max_search_radius_km: float = Field(
        default=16.0, gt=0, description="Widest driver search radius"
    )
    search_radius_growth: float = Field(
        default=2.0, gt=1, description="Radius multiplier per widening step"
    )
    max_assignment_attempts: int = Field(
        default=5, ge=1, description="Candidates tried per assignment"
    )
    max_commit_retries: int = Field(
        default=5, ge=1, description="Internal compare-and-set retries"
    )

    # Realtime
    subscriber_queue_size: int = Field(
        default=1000, ge=1, description="Buffered events per subscriber"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @model_validator(mode="after")
    def validate_search_radius(self) -> "Settings":
        """Preferred radius may not exceed the maximum radius."""
        if self.preferred_search_radius_km > self.max_search_radius_km:
            raise ValueError("preferred_search_radius_km exceeds max_search_radius_km")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
