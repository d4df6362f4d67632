"""
Unit tests for config_flags module.
"""
import pytest

from mailroom.lib.config_flags import (
    EngineConfig,
    get_engine_config,
    reset_engine_config,
    set_engine_config,
)
from mailroom.lib.settings import settings


@pytest.mark.unit
def test_engine_config_defaults_follow_settings():
    """EngineConfig should default to the values from settings."""
    config = EngineConfig()

    assert config.chunk_size == settings.campaign_chunk_size == 200
    assert config.time_budget_seconds == settings.cron_time_budget_seconds == 50
    assert config.stall_threshold_hours == 2
    assert config.lease_ttl_seconds == 120
    assert config.ab_min_sample_size == 50
    assert config.max_recipients == 10_000


@pytest.mark.unit
def test_engine_config_custom_values():
    config = EngineConfig(chunk_size=50, time_budget_seconds=5)

    assert config.chunk_size == 50
    assert config.time_budget_seconds == 5
    assert config.lease_ttl_seconds == 120  # Not overridden


@pytest.mark.unit
@pytest.mark.parametrize(
    "field,value",
    [
        ("chunk_size", 0),
        ("chunk_size", 10_000),
        ("time_budget_seconds", -1),
        ("stall_threshold_hours", 0),
        ("recipient_send_timeout_seconds", 0),
        ("lease_ttl_seconds", 10),
        ("max_recipients", 0),
    ],
)
def test_engine_config_validation(field, value):
    """Out of range values should raise a validation error."""
    with pytest.raises(ValueError):
        EngineConfig(**{field: value})


@pytest.mark.unit
def test_get_engine_config_singleton():
    reset_engine_config()

    assert get_engine_config() is get_engine_config()


@pytest.mark.unit
def test_set_engine_config():
    reset_engine_config()

    set_engine_config(EngineConfig(chunk_size=25, stall_threshold_hours=6))

    config = get_engine_config()
    assert config.chunk_size == 25
    assert config.stall_threshold_hours == 6


@pytest.mark.unit
def test_reset_engine_config():
    set_engine_config(EngineConfig(chunk_size=10))

    reset_engine_config()

    assert get_engine_config().chunk_size == 200  # Back to default


@pytest.mark.unit
def test_engine_config_picks_up_settings_changes(monkeypatch):
    monkeypatch.setattr(settings, "campaign_chunk_size", 75)

    assert EngineConfig().chunk_size == 75
