"""Tests for engine settings read from the domain's per-environment config."""

from decimal import Decimal

import pytest
from protean import current_domain
from protean.domain.config import Config2
from pydantic import ValidationError as SettingsError
from shared.config import EngineSettings, load_settings

CONFIG = """
[databases.default]
provider = "memory"

[custom]
currency = "EUR"
lock_timeout_seconds = "${SCRATCH_LOCK_TIMEOUT|5.0}"
points_value = "0.02"

[test.custom]
lock_timeout_seconds = 0.5

[production.custom]
complete_on_payment = false
"""


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "domain.toml").write_text(CONFIG)
    return tmp_path


def _load(directory, monkeypatch, env):
    monkeypatch.setenv("PROTEAN_ENV", env)
    return load_settings(Config2.load_from_path(str(directory)))


class TestLoadSettings:
    def test_active_domain_runs_with_test_overrides(self):
        settings = load_settings()
        assert settings.lock_timeout_seconds == 1.0
        assert settings.currency == "USD"
        assert current_domain.config["custom"]["lock_timeout_seconds"] == 1.0

    def test_defaults_without_custom_table(self):
        assert load_settings({}) == EngineSettings()

    def test_environment_section_overlays_custom(self, config_dir, monkeypatch):
        settings = _load(config_dir, monkeypatch, "test")
        assert settings.currency == "EUR"
        assert settings.lock_timeout_seconds == 0.5
        assert settings.points_value == Decimal("0.02")
        assert settings.complete_on_payment is True

    def test_other_environment(self, config_dir, monkeypatch):
        settings = _load(config_dir, monkeypatch, "production")
        assert settings.lock_timeout_seconds == 5.0
        assert settings.complete_on_payment is False

    def test_variable_interpolated_into_custom(self, config_dir, monkeypatch):
        monkeypatch.setenv("SCRATCH_LOCK_TIMEOUT", "2.5")
        settings = _load(config_dir, monkeypatch, "production")
        assert settings.lock_timeout_seconds == 2.5

    def test_invalid_values_rejected(self, config_dir, monkeypatch):
        monkeypatch.setenv("SCRATCH_LOCK_TIMEOUT", "0")
        with pytest.raises(SettingsError):
            _load(config_dir, monkeypatch, "production")


class TestEngineSettings:
    def test_frozen(self):
        with pytest.raises(SettingsError):
            EngineSettings().currency = "GBP"
