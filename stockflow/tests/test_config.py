"""
Tests for settings
"""

from stockflow.config import Settings, get_settings, reset_settings
from stockflow.constants import DEFAULT_MAX_VALUE, DEFAULT_MIN_VALUE


def test_defaults(monkeypatch):
    """Defaults match the engine constants"""
    monkeypatch.delenv("DEFAULT_MIN_VALUE", raising=False)
    monkeypatch.delenv("MAX_ROUNDS", raising=False)
    settings = Settings(_env_file=None)

    assert settings.default_min_value == DEFAULT_MIN_VALUE
    assert settings.default_max_value == DEFAULT_MAX_VALUE
    assert settings.max_rounds == 1_000_000


def test_environment_overrides(monkeypatch):
    """Settings are read from the environment, case-insensitively"""
    monkeypatch.setenv("MAX_ROUNDS", "25")
    monkeypatch.setenv("default_max_value", "10")

    settings = Settings(_env_file=None)

    assert settings.max_rounds == 25
    assert settings.default_max_value == 10.0


def test_production_forces_json_logs(monkeypatch):
    """Production always logs JSON"""
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("LOG_FORMAT", "human")

    settings = Settings(_env_file=None)

    assert settings.is_production
    assert settings.log_format_json


def test_get_settings_is_singleton(monkeypatch):
    """get_settings caches until reset"""
    reset_settings()
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("MAX_ROUNDS", "7")
    reset_settings()
    try:
        assert get_settings().max_rounds == 7
    finally:
        reset_settings()
