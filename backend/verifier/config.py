"""
Verifier service configuration.
Uses the RS_VERIFIER_ prefix; database and logging settings come from get_settings().
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class VerifierSettings(BaseSettings):
    """Verifier-specific settings; use get_settings() for DB and upstream config."""

    model_config = SettingsConfigDict(
        env_prefix="RS_VERIFIER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Batch verification
    verify_concurrency: int = Field(default=20, description="Max concurrent entry updates during batch verification")
    batch_recent_limit: int = Field(default=10, description="Runs taken by 'verify recent' (newest first)")

    # Autoclaim
    unclaimed_placeholder: str = Field(
        default="imported",
        description="Legacy player_id marking an unclaimed imported run; empty string is always unclaimed",
    )
    autoclaim_after_import: bool = Field(default=True, description="Run autoclaim after every import that added runs")
    autoclaim_concurrency: int = Field(default=10, description="Max concurrent claim updates")

    # Metrics
    metrics_port: int = Field(default=9092, description="Port for metrics HTTP server")


@lru_cache(maxsize=1)
def get_verifier_settings() -> VerifierSettings:
    return VerifierSettings()
