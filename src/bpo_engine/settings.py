from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bpo_engine.models.enums import ConcurrencyMode


class EngineSettings(BaseSettings):
    """Runtime knobs for the cycle engine, read from `BPO_*` env vars or `.env`."""

    model_config = SettingsConfigDict(env_prefix="BPO_", env_file=".env", extra="ignore")

    retry_max_attempts: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0.0)

    client_concurrency: int = Field(default=5, ge=1)
    transaction_concurrency: int = Field(default=10, ge=1)
    concurrency_mode: ConcurrencyMode = ConcurrencyMode.WINDOWED

    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    materiality_threshold: Decimal = Decimal("10000")
    duplicate_window_days: int = Field(default=3, ge=0)
    capture_lookback_days: int = Field(default=7, ge=0)

    max_cycle_duration_seconds: float = Field(default=3600.0, gt=0)
    broker_max_deliveries: int = Field(default=5, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    openai_model: str = "gpt-4o-mini"
    notify_webhook_url: str | None = None


@lru_cache()
def get_settings() -> EngineSettings:
    return EngineSettings()
