"""
Runtime configuration for the campaign engine and the email cron.

Defaults come from ``settings``; tests and operators can swap the active
configuration with ``set_engine_config`` (for example a tiny wall-clock budget
to exercise deferral).
"""
from typing import Optional
from pydantic import BaseModel, Field, model_validator

from mailroom.lib.logging import get_logger
from mailroom.lib.settings import settings


logger = get_logger(__name__)


class EngineConfig(BaseModel):
    """Knobs for chunked campaign processing."""

    chunk_size: int = Field(
        default_factory=lambda: settings.campaign_chunk_size,
        ge=1,
        le=5000,
        description="Recipients processed per campaign per cron tick"
    )
    time_budget_seconds: float = Field(
        default_factory=lambda: settings.cron_time_budget_seconds,
        ge=0,
        description="No new promotion or chunk starts once this much wall-clock time has elapsed"
    )
    stall_threshold_hours: float = Field(
        default_factory=lambda: settings.stall_threshold_hours,
        gt=0,
        description="Sending campaigns not updated for this long are reported as stalled"
    )
    lease_ttl_seconds: int = Field(
        default_factory=lambda: settings.lease_ttl_seconds,
        ge=1,
        description="Expiry of the cron and per-campaign leases"
    )
    recipient_send_timeout_seconds: float = Field(
        default_factory=lambda: settings.recipient_send_timeout_seconds,
        gt=0,
        description="Bound on a single recipient send, retries included"
    )
    ab_min_sample_size: int = Field(
        default_factory=lambda: settings.ab_min_sample_size,
        ge=0,
        description="Minimum sends per variant before determining a winner"
    )
    max_recipients: int = Field(
        default_factory=lambda: settings.max_recipients,
        ge=1,
        description="Upper bound on recipients fetched per builder strategy"
    )

    @model_validator(mode="after")
    def _lease_outlives_one_send(self) -> "EngineConfig":
        # Leases are renewed once per recipient, so one send must fit in a TTL
        if self.lease_ttl_seconds <= self.recipient_send_timeout_seconds:
            raise ValueError("lease_ttl_seconds must exceed recipient_send_timeout_seconds")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "chunk_size": 200,
                "time_budget_seconds": 50,
                "stall_threshold_hours": 2,
                "lease_ttl_seconds": 120,
            }
        }


_engine_config: Optional[EngineConfig] = None


def get_engine_config() -> EngineConfig:
    """Get the active engine configuration."""
    global _engine_config
    if _engine_config is None:
        _engine_config = EngineConfig()
        logger.info("Initialized default engine configuration")
    return _engine_config


def set_engine_config(config: EngineConfig) -> None:
    """Override the engine configuration."""
    global _engine_config
    _engine_config = config
    logger.info("Updated engine configuration", extra={
        "chunk_size": config.chunk_size,
        "time_budget_seconds": config.time_budget_seconds,
    })


def reset_engine_config() -> None:
    """Reset to defaults (useful for testing)."""
    global _engine_config
    _engine_config = None
